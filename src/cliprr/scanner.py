import hashlib
import logging
import os
import re
from pathlib import Path
from typing import List, Optional, Tuple

from .catalog import Episode

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mp4", ".mov", ".mkv", ".avi", ".m4v", ".ts", ".webm"}

_EP_PATTERNS = [
    re.compile(r"[Ss](\d+)[.\s]*[Ee](\d+)"),
    re.compile(r"(\d+)[Xx](\d+)"),
    re.compile(r"[Ss](\d+)\s*-\s*[Ee](\d+)"),
]
_SEASON_DIR_RE = re.compile(r"^(?:season|series|s)[\s._-]*(\d+)$", re.IGNORECASE)


def scan_input(
    input_path: str,
    recursive: bool = False,
    limit: int = None,
    extensions: List[str] = None,
) -> List[Path]:
    """
    Scan input path for video files.

    Args:
        input_path: File or directory path.
        recursive: Whether to search directories recursively.
        limit: Max number of files to return.
        extensions: List of allowed extensions (e.g. ['mp4', 'mkv']). If None, uses defaults.

    Returns:
        List of Path objects, sorted alphabetically.
    """
    path = Path(input_path)
    if not path.exists():
        raise FileNotFoundError(f"Input path not found: {input_path}")

    allowed_exts = set(extensions) if extensions else VIDEO_EXTENSIONS
    allowed_exts = {e if e.startswith(".") else f".{e}" for e in allowed_exts}
    allowed_exts = {e.lower() for e in allowed_exts}

    files = []

    if path.is_file():
        if path.suffix.lower() in allowed_exts:
            files.append(path)
    elif path.is_dir():
        if recursive:
            for root, _, filenames in os.walk(path):
                for name in filenames:
                    p = Path(root) / name
                    if p.suffix.lower() in allowed_exts:
                        files.append(p)
        else:
            for item in path.iterdir():
                if item.is_file() and item.suffix.lower() in allowed_exts:
                    files.append(item)

    # Deterministic sort
    files.sort(key=lambda p: str(p))

    if limit:
        files = files[:limit]

    return files


def stable_id(key: str) -> int:
    """Deterministic positive integer id (fits a signed 64-bit column)."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=7).digest()
    return int.from_bytes(digest, "big")


def parse_episode_tag(name: str) -> Optional[Tuple[int, int]]:
    """Extract (season, episode) from names like 'Show.S01E02' or 'Show 1x02'."""
    for pattern in _EP_PATTERNS:
        match = pattern.search(name)
        if match:
            return int(match.group(1)), int(match.group(2))
    return None


def _show_name(root: Path, path: Path) -> str:
    """Show folder under the library root, else the filename before its tag."""
    relative = path.relative_to(root)
    parts = relative.parts[:-1]
    for part in parts:
        if not _SEASON_DIR_RE.match(part):
            return part

    stem = path.stem
    for pattern in _EP_PATTERNS:
        match = pattern.search(stem)
        if match and match.start() > 0:
            return re.sub(r"[\s._-]+$", "", stem[: match.start()]).replace(".", " ")
    return stem


def scan_library(root: str, limit: int = None) -> List[Episode]:
    """
    Walk a TV library and build Episode records.

    Files without a season/episode tag are skipped. Ids are derived from the
    show name and the path relative to the root, so rescans are stable.

    Returns:
        Episodes sorted by (show, season, episode, path).
    """
    root_path = Path(root).resolve()
    if root_path.is_file():
        root_path = root_path.parent

    episodes = []
    for path in scan_input(str(root_path), recursive=True):
        tag = parse_episode_tag(path.name)
        if tag is None:
            logger.debug("Skipping untagged file %s", path)
            continue

        season, number = tag
        show = _show_name(root_path, path)
        episodes.append(
            Episode(
                id=stable_id(path.relative_to(root_path).as_posix()),
                show_id=stable_id(show.lower()),
                show_name=show,
                season_number=season,
                episode_number=number,
                path=str(path.resolve()),
            )
        )

    episodes.sort(key=lambda e: (e.show_name or "", e.season_number, e.episode_number, e.path))
    if limit:
        episodes = episodes[:limit]

    logger.info("Scanned %s: %d episode(s)", root_path, len(episodes))
    return episodes
