"""
Error kinds raised by the recognition engine.

Not finding a song is not an error: ``search`` returns ``score == 0`` and no
song name in that case.
"""


class RingabellError(Exception):
    """Base class for every error raised by the engine."""


class InvalidAudioFormat(RingabellError, ValueError):
    """The audio buffer is empty, unparseable or too short to analyse."""


class DuplicateSongName(RingabellError, ValueError):
    """A song with the same name is already registered."""

    def __init__(self, name: str):
        super().__init__(f"Song '{name}' is already registered")
        self.name = name


class IndexCorruption(RingabellError):
    """A persisted snapshot failed validation on load."""


class OperationCancelled(RingabellError):
    """A register/search call was cancelled or ran past its deadline."""
