from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from unitoperator.src.agent import AgentClient
from unitoperator.src.config import OperatorConfig
from unitoperator.src.events import EventRecorder
from unitoperator.src.kube import ResourceStore


@dataclass
class ReconcileContext:
    """Collaborators shared by every reconcile step of both controllers."""

    store: ResourceStore
    config: OperatorConfig
    events: EventRecorder
    agent: AgentClient
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("unitoperator"))
    stop_event: threading.Event = field(default_factory=threading.Event)

    @property
    def waits(self):
        return self.config.waits
