"""Reply detection layers, quorum validation and orchestration."""

from __future__ import annotations

from replyguard.detection.address import DomainLayer, ExactAddressLayer
from replyguard.detection.base import DetectionLayer, is_candidate_reply
from replyguard.detection.name_subject import DisplayNameLayer, SubjectLayer
from replyguard.detection.orchestrator import DEFAULT_LAYERS, DetectionOrchestrator
from replyguard.detection.quorum import validate_quorum
from replyguard.detection.thread import ThreadLayer

__all__ = [
    "DEFAULT_LAYERS",
    "DetectionLayer",
    "DetectionOrchestrator",
    "DisplayNameLayer",
    "DomainLayer",
    "ExactAddressLayer",
    "SubjectLayer",
    "ThreadLayer",
    "is_candidate_reply",
    "validate_quorum",
]
