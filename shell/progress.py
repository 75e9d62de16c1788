"""Progress extraction from the flashing tool's human-readable output.

esptool prints lines such as ``Writing at 0x00010000 [=====>    ] 55.5% 65536/118000 bytes``.
The format is not a stable interface, so matching is kept here, away from the
process handling in ``flash_manager``.
"""

import re
from typing import Optional, Pattern

PERCENT_PATTERN: Pattern[str] = re.compile(r"(\d+(?:\.\d+)?)%")


class ProgressParser:
    def __init__(self, pattern: Pattern[str] = PERCENT_PATTERN) -> None:
        self.pattern: Pattern[str] = pattern

    def parse(self, line: str) -> Optional[int]:
        """Returns the floored percentage found in a line, or None."""
        match = self.pattern.search(line)
        if not match:
            return None
        percentage = int(float(match.group(1)))
        return max(0, min(100, percentage))
