"""
Prepared dataset sample model for ASR Bench Lab.

A :class:`Sample` is produced by normalizing a raw datasets-server row
and is consumed read-only by the trial executor.
"""

from __future__ import annotations

from typing import Any

from pydantic import ConfigDict, Field

from bench_common.models.base import CamelModel


class Sample(CamelModel):
    """A dataset row prepared for benchmarking.

    Attributes:
        row_index: Row index inside the dataset split.
        audio_url: Location of the audio clip (``None`` if the row had none).
        reference_text: Normalized reference transcription.
        speaker: Speaker identifier, if the dataset provides one.
        gender: Speaker gender, if provided.
        speed: Speaking-speed annotation, if provided.
        volume: Volume annotation, if provided.
        sample_rate: Declared sample rate of the clip.
        raw: The original row payload.
    """

    model_config = ConfigDict(frozen=True)

    row_index: int = Field(..., ge=0)
    audio_url: str | None = None
    reference_text: str = ""
    speaker: str = ""
    gender: str = ""
    speed: Any = None
    volume: Any = None
    sample_rate: int = 16000
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    def key(self, split: str) -> str:
        """Return the ``{split}:{row_index}`` sample key."""
        return f"{split}:{self.row_index}"
