from .work_item import CancellationToken, WorkItem, WorkResult, WorkState, WorkTag

__all__ = ["CancellationToken", "WorkItem", "WorkResult", "WorkState", "WorkTag"]
