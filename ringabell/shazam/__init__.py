"""
Shazam-style song recognition approach.

This approach follows the classic Shazam algorithm:
1. Resample audio to a canonical mono stream
2. Extract a magnitude spectrogram
3. Pick spectral peaks that dominate their neighbourhood
4. Create constellation hashes from peak pairs
5. Match against an inverted index by time-offset voting
"""

from .recognizer import SearchResult, ShazamRecognizer
from .config import BANDS, TARGET_SR, N_FFT, HOP_LENGTH, FUZ_FACTOR, default_params, load_config

__all__ = [
    'ShazamRecognizer', 'SearchResult', 'default_params', 'load_config',
    'BANDS', 'TARGET_SR', 'N_FFT', 'HOP_LENGTH', 'FUZ_FACTOR',
]
