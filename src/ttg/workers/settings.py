"""arq worker settings module.

Import path for arq CLI: arq ttg.workers.settings.WorkerSettings
"""

from __future__ import annotations

from ttg.workers.gamification_worker import WorkerSettings

__all__ = ["WorkerSettings"]
