"""
Run a workflow definition from a JSON file without the API.

    python scripts/run_workflow.py workflow.json --trigger '{"email": "a@b.co"}'

The file holds either ``{"nodes": [...], "edges": [...]}`` or a full workflow
record with ``definition`` and ``variables``. Database actions are disabled.
"""
import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from automation_platform.services.execution_engine import execute_workflow  # noqa: E402


def main():
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("path", type=Path)
    parser.add_argument("--trigger", default="{}", help="trigger data as JSON")
    parser.add_argument("--org", default="local")
    args = parser.parse_args()

    workflow = json.loads(args.path.read_text(encoding="utf-8"))
    result = asyncio.run(
        execute_workflow(
            workflow,
            workflow_id=str(workflow.get("id") or uuid.uuid4()),
            execution_id=str(uuid.uuid4()),
            organization_id=args.org,
            trigger_data=json.loads(args.trigger),
        )
    )
    print(json.dumps(result.to_dict(), indent=2, default=str))
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
