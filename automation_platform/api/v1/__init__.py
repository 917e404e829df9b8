from . import executions, schedules, webhooks, workflows
