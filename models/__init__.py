from .work_items import (LATEST_COLUMNS, SNAPSHOT_COLUMNS,  # noqa: F401
                         Base, SyncRun, WorkItemLatest, WorkItemSnapshot)

__all__ = [
    "Base",
    "LATEST_COLUMNS",
    "SNAPSHOT_COLUMNS",
    "SyncRun",
    "WorkItemLatest",
    "WorkItemSnapshot",
]
