"""Per-language syntax extractors."""

from __future__ import annotations

from typing import List

from ..parser import LanguageExtractor
from .javascript import JavaScriptExtractor, TSXExtractor, TypeScriptExtractor
from .python import PythonExtractor

__all__ = [
    "JavaScriptExtractor",
    "PythonExtractor",
    "TSXExtractor",
    "TypeScriptExtractor",
    "default_extractors",
]


def default_extractors() -> List[LanguageExtractor]:
    return [JavaScriptExtractor(), TypeScriptExtractor(), TSXExtractor(), PythonExtractor()]
