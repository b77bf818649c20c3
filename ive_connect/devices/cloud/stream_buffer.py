from typing import Optional

from ive_connect.devices.cloud.types import HspPoint


class PointStreamBuffer:
    """Tracks which timeline points have been uploaded to the device buffer.

    Stream indices are 1-based: the point at timeline index i has stream index i + 1,
    so the tail index is the timeline index of the next point to upload.

    Args:
        points: Every point of the timeline, in order.
        chunk_size: Maximum number of points per upload.
        threshold: Refill once fewer points than this remain ahead of playback.
    """

    def __init__(self, points: list[HspPoint], chunk_size: int = 100, threshold: int = 30):
        self._points = points
        self._chunk_size = chunk_size
        self._threshold = threshold
        self._tail = 0

    @property
    def tail_index(self) -> int:
        return self._tail

    @property
    def total(self) -> int:
        return len(self._points)

    @property
    def exhausted(self) -> bool:
        return self._tail >= len(self._points)

    def remaining_ahead(self, current_index: int) -> int:
        """Points uploaded but not yet reached by playback."""
        return max(0, self._tail - current_index)

    def needs_refill(self, current_index: int) -> bool:
        return not self.exhausted and self.remaining_ahead(current_index) < self._threshold

    def next_chunk(self) -> Optional[tuple[list[HspPoint], int]]:
        """Take the next chunk and return it together with its tail stream index."""
        if self.exhausted:
            return None
        chunk = self._points[self._tail : self._tail + self._chunk_size]
        self._tail += len(chunk)
        return chunk, self._tail

    def seek(self, index: int) -> None:
        """Continue uploading from timeline index ``index``."""
        self._tail = min(max(0, index), len(self._points))
