"""Segmented, streaming text translation with structure-preserving reinsertion."""

from .structures import BufferHolder, CallbackHolder, JobState, StreamUpdate, TextHolder
from .translator import TranslationRunner, TranslationSummary

__all__ = [
    "BufferHolder",
    "CallbackHolder",
    "JobState",
    "StreamUpdate",
    "TextHolder",
    "TranslationRunner",
    "TranslationSummary",
]

__version__ = "0.1.0"
