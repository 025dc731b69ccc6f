from chainpulse.app.services.insights import (
    ChainSnapshot,
    InsightsService,
    SnapshotHandler,
    build_insights_job,
)

__all__ = ["ChainSnapshot", "InsightsService", "SnapshotHandler", "build_insights_job"]
