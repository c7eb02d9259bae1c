"""Energy-based voice activity detection.

This is a baseline heuristic, not a production VAD: it compares the mean
absolute deviation of the frame's byte values from a zero reference level
against a fixed threshold.
"""

DEFAULT_ENERGY_THRESHOLD = 10.0
DEFAULT_ZERO_REFERENCE = 128


def frame_energy(frame: bytes, zero_reference: int = DEFAULT_ZERO_REFERENCE) -> float:
    """Return the mean absolute deviation of the frame from the zero reference."""
    if not frame:
        return 0.0
    return sum(abs(sample - zero_reference) for sample in frame) / len(frame)


def detect_voice_activity(
    frame: bytes,
    threshold: float = DEFAULT_ENERGY_THRESHOLD,
    zero_reference: int = DEFAULT_ZERO_REFERENCE,
) -> bool:
    """Return True if the frame's energy exceeds the threshold."""
    return frame_energy(frame, zero_reference) > threshold
