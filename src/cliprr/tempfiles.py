import logging
import re
import shutil
from pathlib import Path
from typing import Iterable

from .detector import TEMP_PREFIX

logger = logging.getLogger(__name__)

_JOB_DIR_RE = re.compile(rf"^{re.escape(TEMP_PREFIX)}(\d+)-")


def cleanup_temp_files(temp_root: str, active_job_ids: Iterable[int] = ()) -> int:
    """
    Remove leftover per-job scratch directories under temp_root.

    Directories belonging to a job that is still active are kept. Only
    entries with the cliprr job prefix are touched.

    Returns:
        Number of entries removed.
    """
    root = Path(temp_root)
    if not root.is_dir():
        return 0

    keep = {int(j) for j in active_job_ids}
    removed = 0
    for entry in sorted(root.iterdir()):
        if not entry.name.startswith(TEMP_PREFIX):
            continue
        match = _JOB_DIR_RE.match(entry.name)
        if match and int(match.group(1)) in keep:
            continue

        try:
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            removed += 1
        except OSError as e:
            logger.warning("Could not remove %s: %s", entry, e)

    if removed:
        logger.info("Removed %d orphaned temp entr%s from %s", removed, "y" if removed == 1 else "ies", root)
    return removed
