"""Event bus: bounded in-process queue delivering kernel notifications to subscribers."""

from fynmesh.events.bus import EventBus
from fynmesh.events.models import Event
from fynmesh.events.topics import KernelTopics

__all__ = ["Event", "EventBus", "KernelTopics"]
