"""Progress checkpoints reported through Project.progress.

The checkpoints are coarse milestones for polling clients, not a timing
estimate. The segment stage spreads its share linearly over the clip count.
"""

import math

ANALYSIS_STARTED = 5
ANALYSIS_DONE = 10
SEGMENTS_DONE = 90
RENDER_STARTED = 92
RENDER_CONCAT_READY = 95
COMPLETE = 100

_SEGMENT_SPAN = SEGMENTS_DONE - ANALYSIS_DONE


def segment_progress(completed: int, total: int) -> int:
    """Progress after `completed` of `total` segments have been stored.

    >>> segment_progress(3, 6)
    50
    """
    if total <= 0:
        return ANALYSIS_DONE
    completed = min(max(completed, 0), total)
    return math.floor(ANALYSIS_DONE + _SEGMENT_SPAN * completed / total)
