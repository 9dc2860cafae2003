"""arq worker settings module.

Import path for arq CLI: arq reloop.workers.settings.WorkerSettings
"""

from __future__ import annotations

from reloop.workers.reward_worker import WorkerSettings

__all__ = ["WorkerSettings"]
