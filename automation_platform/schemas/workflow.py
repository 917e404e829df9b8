from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class NodePosition(BaseModel):
    x: float = 0
    y: float = 0


class NodeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)


class WorkflowNode(BaseModel):
    id: str
    type: str
    position: NodePosition = Field(default_factory=NodePosition)
    data: NodeData = Field(default_factory=NodeData)

    @property
    def label(self) -> str:
        return self.data.label or self.id

    @property
    def config(self) -> dict[str, Any]:
        return self.data.config


class WorkflowEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")
    label: str | None = None


class WorkflowDefinition(BaseModel):
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> WorkflowNode | None:
        return next((node for node in self.nodes if node.id == node_id), None)

    def outgoing(self, node_id: str) -> list[WorkflowEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> list[WorkflowEdge]:
        return [edge for edge in self.edges if edge.target == node_id]


class WorkflowCreate(BaseModel):
    name: str
    description: str | None = None
    status: Literal["draft", "active", "paused", "archived"] = "draft"
    definition: WorkflowDefinition = Field(default_factory=WorkflowDefinition)
    variables: dict[str, Any] = Field(default_factory=dict)
    error_handling: dict[str, Any] = Field(default_factory=dict)
    webhook_enabled: bool = False
    webhook_secret: str | None = None
    webhook_auth_type: Literal["none", "api_key", "bearer_token", "hmac"] = "none"
    tags: list[str] = Field(default_factory=list)


class WorkflowUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    status: Literal["draft", "active", "paused", "archived"] | None = None
    definition: WorkflowDefinition | None = None
    variables: dict[str, Any] | None = None
    error_handling: dict[str, Any] | None = None
    webhook_enabled: bool | None = None
    webhook_secret: str | None = None
    webhook_auth_type: Literal["none", "api_key", "bearer_token", "hmac"] | None = None
    tags: list[str] | None = None


class WorkflowExecuteRequest(BaseModel):
    trigger_data: dict[str, Any] = Field(default_factory=dict)
