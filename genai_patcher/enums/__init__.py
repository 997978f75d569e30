"""Enumerations."""

from genai_patcher.enums.ai_provider import AiProvider
from genai_patcher.enums.processing import (
    AspectMismatchPolicy,
    ExecutionMode,
    ProcessingStep,
    ProcessScope,
)
from genai_patcher.enums.region_status import RegionSource, RegionStatus

__all__ = [
    "AiProvider",
    "AspectMismatchPolicy",
    "ExecutionMode",
    "ProcessScope",
    "ProcessingStep",
    "RegionSource",
    "RegionStatus",
]
