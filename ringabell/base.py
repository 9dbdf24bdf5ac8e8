"""
Base interface for song recognizers.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Tuple, Any, Dict


class BaseSongRecognizer(ABC):
    """
    Abstract base class for song recognition engines.

    The in-memory operations (``register``/``search``) are the core surface;
    the path based ones (``index_song``/``recognize``) are conveniences for
    scripts that work on audio files.
    """

    @abstractmethod
    def register(self, name: str, audio: Any, sample_rate: Optional[int] = None) -> int:
        """
        Fingerprint a recording and add it to the index.

        Args:
            name: Display name of the recording
            audio: Sample array or audio bytes
            sample_rate: Sample rate of ``audio`` when it carries no header

        Returns:
            The id assigned to the new song
        """
        pass

    @abstractmethod
    def search(self, audio: Any, sample_rate: Optional[int] = None) -> Any:
        """
        Find the registered recording that best matches ``audio``.

        Returns:
            A result record with the song name (or None) and a score in [0, 1]
        """
        pass

    @abstractmethod
    def index_song(self, audio_path: Path) -> Optional[int]:
        """
        Add a single audio file to the index, named after its stem.

        Args:
            audio_path: Path to the audio file to index
        """
        pass

    @abstractmethod
    def index_folder(self, folder: Path, pattern: str = "*.wav") -> int:
        """
        Index all songs in a folder matching the given pattern.

        Args:
            folder: Path to folder containing audio files
            pattern: Glob pattern for audio files (default: "*.wav")

        Returns:
            Number of songs successfully indexed
        """
        pass

    @abstractmethod
    def recognize(
        self,
        query_path: Path,
        clip_length_sec: Optional[float] = None,
        snr_db: Optional[float] = None
    ) -> Tuple[Optional[str], float, Dict[str, Any]]:
        """
        Recognize a song from an audio file.

        Args:
            query_path: Path to the query audio file
            clip_length_sec: Optional clip length to use (for testing with shorter clips)
            snr_db: Optional SNR in dB for noise injection (for testing robustness)

        Returns:
            Tuple of (song_name, score, metadata_dict)
        """
        pass

    @abstractmethod
    def save(self, path: Path) -> None:
        """Write a snapshot of the registry and index to ``path``."""
        pass

    @abstractmethod
    def load(self, path: Path) -> None:
        """Replace the registry and index with the snapshot at ``path``."""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the name of this recognition approach."""
        pass

    @property
    @abstractmethod
    def num_indexed_songs(self) -> int:
        """Return the number of songs currently indexed."""
        pass
