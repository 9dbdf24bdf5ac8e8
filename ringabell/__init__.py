"""
ringabell - Acoustic fingerprinting and song recognition

Register reference recordings under a name, then recognize them (or a noisy,
partial excerpt of them) from raw audio.
"""

from ringabell.base import BaseSongRecognizer
from ringabell.errors import (
    DuplicateSongName,
    IndexCorruption,
    InvalidAudioFormat,
    OperationCancelled,
    RingabellError,
)
from ringabell.shazam import SearchResult, ShazamRecognizer

__all__ = [
    'BaseSongRecognizer',
    'ShazamRecognizer',
    'SearchResult',
    'RingabellError',
    'InvalidAudioFormat',
    'DuplicateSongName',
    'IndexCorruption',
    'OperationCancelled',
]
