"""Audio object storage."""

from .cleanup import AudioCleanup
from .r2_client import R2Client, R2Config, normalize_audio_key

__all__ = ["AudioCleanup", "R2Client", "R2Config", "normalize_audio_key"]
