"""Framework adapters that expose a WorkflowEngine over HTTP."""
