# contentguard/engine/__init__.py
"""
Screening engine - tiered content-policy detection and decision.
"""

from contentguard.engine.extractor import StructuredLlmExtractor
from contentguard.engine.orchestrator import DetectionOrchestrator
from contentguard.engine.pipeline import ContentPipeline
from contentguard.engine.policy import DecisionEngine
from contentguard.engine.resolver import PolicySnapshotResolver
from contentguard.engine.sanitize import Redactor

__all__ = [
    'ContentPipeline',
    'PolicySnapshotResolver',
    'DetectionOrchestrator',
    'StructuredLlmExtractor',
    'DecisionEngine',
    'Redactor',
]
