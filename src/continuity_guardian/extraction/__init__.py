"""
Fact extraction: the capability boundary and the validating extractor.
"""

from .capability import (
    EXTRACTION_PROMPT,
    ExtractionCapability,
    LLMExtractionCapability,
    parse_extraction_response,
    strip_code_fences,
)
from .extractor import (
    ExtractionResult,
    FactExtractor,
    RawEventRecord,
    RawFactRecord,
    locate_excerpt,
    split_chunks,
)

__all__ = [
    "EXTRACTION_PROMPT",
    "ExtractionCapability",
    "LLMExtractionCapability",
    "parse_extraction_response",
    "strip_code_fences",
    "ExtractionResult",
    "FactExtractor",
    "RawEventRecord",
    "RawFactRecord",
    "locate_excerpt",
    "split_chunks",
]
