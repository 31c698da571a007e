from changeflow.state.store import WorkflowStore

__all__ = ["WorkflowStore"]
