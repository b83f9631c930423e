import re
from typing import Optional, Tuple

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


class RangeNotSatisfiable(Exception):
    def __init__(self, size: int) -> None:
        super().__init__(f"Requested range not satisfiable for size {size}")
        self.size = size


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Parse a single ``Range: bytes=`` header into an inclusive ``(start, end)``.

    Returns None when the header is absent or not a single byte range, in
    which case the whole file is served.
    """
    if not header:
        return None
    match = _RANGE_RE.match(header.strip().replace(" ", ""))
    if match is None:
        return None

    first, last = match.groups()
    if not first and not last:
        return None
    if not first:
        # suffix range: the last N bytes
        length = int(last)
        if length == 0 or size == 0:
            raise RangeNotSatisfiable(size)
        return max(size - length, 0), size - 1

    start = int(first)
    end = int(last) if last else size - 1
    if start >= size or end < start:
        raise RangeNotSatisfiable(size)
    return start, min(end, size - 1)
