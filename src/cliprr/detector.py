"""Recurring-segment detection by audio fingerprint comparison.

For an episode and its siblings (same show and season):

1. Extract mono audio of the search regions (head for intros/recaps, tail for
   credits) with ffmpeg into a per-job temporary directory
2. Mel spectrogram in dB, averaged over sub-blocks of a fixed window
3. Each episode window is z-normalised and correlated against every sliding
   window of each sibling; the best correlation per sibling is kept
4. Windows where enough siblings agree above the threshold are merged into
   runs (gap tolerant) and filtered by duration

Identical inputs always give identical output: siblings are ordered by id,
no randomness is used and offsets are rounded.
"""

import logging
import math
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import librosa
import numpy as np

from . import segments as seg_mod
from .catalog import Episode
from .errors import DetectionError, DetectionErrorKind
from .ffmpeg_runner import FfmpegErrorType, FfmpegProgress, FfmpegResult, FfmpegRunner
from .models import DetectionConfig, SegmentMatch, sort_matches

logger = logging.getLogger(__name__)

TEMP_PREFIX = "cliprr-job-"
_MIN_STD = 1e-6


def compute_fingerprint(
    y: np.ndarray, sr: int, config: DetectionConfig, step_blocks: Optional[int] = None
) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Per-window spectral fingerprint.

    Args:
        y: Mono audio samples.
        sr: Sample rate of y.
        config: Detection parameters (hop, bands, window, sub-blocks).
        step_blocks: Window stride in sub-blocks; defaults to one full window
            (non-overlapping). Siblings use 1 so any alignment is covered.

    Returns:
        (windows, valid, window_duration_s): z-normalised windows of shape
        (n_windows, sub_blocks * n_bands), mask of windows with usable
        variance, and the actual window length in seconds.
    """
    sub_blocks = config.sub_blocks
    block_frames = max(1, int(round(config.window_s * sr / config.hop_length / sub_blocks)))
    window_duration = block_frames * sub_blocks * config.hop_length / sr
    width = sub_blocks * config.n_bands
    step = step_blocks or sub_blocks

    if y.size == 0:
        return np.empty((0, width)), np.zeros(0, dtype=bool), window_duration

    mel = librosa.feature.melspectrogram(
        y=y, sr=sr, n_fft=2048, hop_length=config.hop_length, n_mels=config.n_bands, fmax=sr / 2
    )
    mel_db = librosa.power_to_db(mel, ref=1.0)

    n_blocks = mel_db.shape[1] // block_frames
    if n_blocks < sub_blocks:
        return np.empty((0, width)), np.zeros(0, dtype=bool), window_duration

    # (n_blocks, n_bands): mean dB per band over each sub-block
    blocks = (
        mel_db[:, : n_blocks * block_frames]
        .reshape(config.n_bands, n_blocks, block_frames)
        .mean(axis=2)
        .T
    )

    starts = np.arange(0, n_blocks - sub_blocks + 1, step)
    index = starts[:, None] + np.arange(sub_blocks)[None, :]
    windows = blocks[index].reshape(len(starts), width)

    mean = windows.mean(axis=1, keepdims=True)
    std = windows.std(axis=1, keepdims=True)
    valid = std[:, 0] > _MIN_STD
    normalised = np.where(valid[:, None], (windows - mean) / np.where(std > _MIN_STD, std, 1.0), 0.0)
    return normalised, valid, window_duration


def best_correlations(
    episode_windows: np.ndarray,
    episode_valid: np.ndarray,
    sibling_windows: np.ndarray,
    sibling_valid: np.ndarray,
) -> np.ndarray:
    """
    For each episode window, the highest Pearson correlation with any sibling
    window. Invalid windows (silence, constant energy) never match (-1).
    """
    n = episode_windows.shape[0]
    if n == 0 or sibling_windows.shape[0] == 0 or not sibling_valid.any():
        return np.full(n, -1.0)

    corr = episode_windows @ sibling_windows[sibling_valid].T / episode_windows.shape[1]
    best = corr.max(axis=1)
    return np.where(episode_valid, best, -1.0)


def agreeing_windows(
    per_sibling: Sequence[np.ndarray], threshold: float, min_agree_fraction: float
) -> Tuple[List[bool], List[float]]:
    """
    Vote across siblings.

    A window matches when at least ceil(min_agree_fraction * n_siblings)
    siblings correlate at or above threshold. Its score is the mean
    correlation of the agreeing siblings.
    """
    if not per_sibling:
        return [], []

    scores = np.vstack(per_sibling)  # (n_siblings, n_windows)
    required = max(1, math.ceil(min_agree_fraction * scores.shape[0]))
    agree = scores >= threshold
    counts = agree.sum(axis=0)
    flags = counts >= required

    sums = np.where(agree, scores, 0.0).sum(axis=0)
    means = np.divide(sums, counts, out=np.zeros_like(sums), where=counts > 0)
    return flags.tolist(), np.clip(means, 0.0, 1.0).tolist()


class SegmentDetector:
    """Detects recurring segments of an episode against its siblings.

    Example:
        >>> detector = SegmentDetector(config.detection, temp_root="data/temp")
        >>> matches = detector.detect(episode, catalog.get_siblings(episode))
    """

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        temp_root: Optional[str] = None,
        runner_factory: Callable[..., FfmpegRunner] = FfmpegRunner,
    ):
        self.config = config or DetectionConfig()
        self.temp_root = temp_root
        self._runner_factory = runner_factory

    def detect(
        self,
        episode: Episode,
        siblings: Sequence[Episode],
        cancel_event: Optional[threading.Event] = None,
        hwaccel_args: Optional[List[str]] = None,
        job_id: Optional[int] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> List[SegmentMatch]:
        """Find segments of `episode` that recur across `siblings`.

        Args:
            episode: Episode to analyse
            siblings: Other episodes of the same show and season
            cancel_event: Set to abort; the running ffmpeg is killed
            hwaccel_args: Hardware decode options when admitted to the GPU class
            job_id: Owning job, used to name the temporary directory
            progress_callback: Called with ffmpeg progress during long extractions

        Raises:
            DetectionError: decode, timeout, cancelled or no_match
        """
        cancel_event = cancel_event or threading.Event()
        siblings = sorted(
            (s for s in siblings if s.id != episode.id), key=lambda s: s.id
        )[: self.config.max_siblings]

        if not siblings:
            raise DetectionError(DetectionErrorKind.NO_MATCH, "no sibling episodes to compare against")
        if not Path(episode.path).is_file():
            raise DetectionError(DetectionErrorKind.DECODE, f"media file not found: {episode.path}")

        if self.temp_root:
            Path(self.temp_root).mkdir(parents=True, exist_ok=True)
        prefix = f"{TEMP_PREFIX}{job_id}-" if job_id is not None else TEMP_PREFIX
        work_dir = Path(tempfile.mkdtemp(prefix=prefix, dir=self.temp_root))

        try:
            return self._detect_in(
                work_dir, episode, siblings, cancel_event, hwaccel_args, progress_callback
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def _detect_in(
        self,
        work_dir: Path,
        episode: Episode,
        siblings: List[Episode],
        cancel_event: threading.Event,
        hwaccel_args: Optional[List[str]],
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> List[SegmentMatch]:
        cfg = self.config
        runner = self._runner_factory(
            global_timeout_s=cfg.extraction_timeout_s,
            no_progress_timeout_s=cfg.no_progress_timeout_s,
            cancel_event=cancel_event,
            progress_callback=progress_callback,
        )

        # Head region: intros and recaps
        ep_head, ep_duration = self._load_region(
            runner, work_dir, episode, "head", 0.0, cfg.intro_search_s, hwaccel_args, required=True
        )
        sib_heads = []
        sib_durations = {}
        for sibling in siblings:
            loaded = self._load_region(
                runner, work_dir, sibling, "head", 0.0, cfg.intro_search_s, hwaccel_args
            )
            if loaded is not None:
                sib_heads.append(loaded[0])
                sib_durations[sibling.id] = loaded[1]

        if not sib_heads:
            raise DetectionError(DetectionErrorKind.DECODE, "no sibling episode could be decoded")

        head_end = min(cfg.intro_search_s, ep_duration) if ep_duration else cfg.intro_search_s
        matches = self.match_region(episode, ep_head, sib_heads, 0.0, head_end, "intro")

        # Tail region: credits
        tail = self._tail_start(ep_duration)
        if tail is not None:
            ep_tail, _ = self._load_region(
                runner, work_dir, episode, "tail", tail, cfg.credits_search_s, hwaccel_args,
                required=True,
            )
            sib_tails = []
            for sibling in siblings:
                sib_tail_start = self._tail_start(sib_durations.get(sibling.id))
                if sib_tail_start is None:
                    continue
                loaded = self._load_region(
                    runner, work_dir, sibling, "tail", sib_tail_start, cfg.credits_search_s,
                    hwaccel_args,
                )
                if loaded is not None:
                    sib_tails.append(loaded[0])

            if sib_tails:
                matches.extend(
                    self.match_region(episode, ep_tail, sib_tails, tail, ep_duration, "credits")
                )

        if not matches:
            raise DetectionError(
                DetectionErrorKind.NO_MATCH,
                f"no recurring segment found across {len(sib_heads)} sibling(s)",
            )

        logger.info(
            "Episode %s: %d segment(s) %s",
            episode.id,
            len(matches),
            ", ".join(f"{m.label} {m.start_offset:.1f}-{m.end_offset:.1f}s" for m in matches),
        )
        return matches

    def _tail_start(self, duration: Optional[float]) -> Optional[float]:
        """Start of the credits search region, or None when it would be too short."""
        cfg = self.config
        if not duration or cfg.credits_search_s <= 0:
            return None
        start = max(cfg.intro_search_s, duration - cfg.credits_search_s)
        if duration - start < cfg.min_segment_duration_s:
            return None
        return start

    def _load_region(
        self,
        runner: FfmpegRunner,
        work_dir: Path,
        episode: Episode,
        region: str,
        start: float,
        duration: float,
        hwaccel_args: Optional[List[str]],
        required: bool = False,
    ) -> Optional[Tuple[np.ndarray, Optional[float]]]:
        """Extract and load one region.

        Returns:
            (samples, media_duration_s), or None for an unusable sibling

        Raises:
            DetectionError: on cancellation, or any failure when required
        """
        if runner.cancel_event.is_set():
            raise DetectionError(DetectionErrorKind.CANCELLED, "detection cancelled")

        wav = work_dir / f"{episode.id}-{region}.wav"
        result = runner.extract_audio(
            episode.path, str(wav), self.config.sample_rate,
            start=start, duration=duration, hwaccel_args=hwaccel_args,
        )

        if not result.success:
            error = self._classify(result, episode)
            if error.kind == DetectionErrorKind.CANCELLED or required:
                raise error
            logger.warning("Skipping sibling %s: %s", episode.id, error)
            return None

        try:
            y, _ = librosa.load(str(wav), sr=self.config.sample_rate, mono=True)
        except Exception as e:
            error = DetectionError(
                DetectionErrorKind.DECODE, f"cannot load audio of episode {episode.id}: {e}"
            )
            if required:
                raise error from e
            logger.warning("Skipping sibling %s: %s", episode.id, error)
            return None
        finally:
            wav.unlink(missing_ok=True)

        return y, result.media_duration_s

    @staticmethod
    def _classify(result: FfmpegResult, episode: Episode) -> DetectionError:
        if result.error_type == FfmpegErrorType.CANCELLED:
            return DetectionError(DetectionErrorKind.CANCELLED, "detection cancelled")
        if result.error_type == FfmpegErrorType.TIMEOUT:
            return DetectionError(
                DetectionErrorKind.TIMEOUT,
                f"audio extraction timed out for episode {episode.id}",
            )
        return DetectionError(
            DetectionErrorKind.DECODE,
            f"cannot decode episode {episode.id}: {result.error_summary}",
        )

    def match_region(
        self,
        episode: Episode,
        episode_audio: np.ndarray,
        sibling_audio: Sequence[np.ndarray],
        region_start: float,
        region_end: Optional[float],
        label: str,
    ) -> List[SegmentMatch]:
        """Compare one region of decoded audio and build validated matches.

        Args:
            episode: Episode the matches belong to
            episode_audio: Episode samples of the region (config sample rate)
            sibling_audio: Sibling samples of the same region, in sibling id order
            region_start: Media time of the first episode sample
            region_end: Media time bound for matches (None = end of region audio)
            label: "intro" or "credits"
        """
        cfg = self.config
        sr = cfg.sample_rate

        ep_windows, ep_valid, window_duration = compute_fingerprint(episode_audio, sr, cfg)
        per_sibling = []
        for audio in sibling_audio:
            sib_windows, sib_valid, _ = compute_fingerprint(audio, sr, cfg, step_blocks=1)
            per_sibling.append(best_correlations(ep_windows, ep_valid, sib_windows, sib_valid))

        flags, scores = agreeing_windows(
            per_sibling, cfg.similarity_threshold, cfg.min_agree_fraction
        )
        raw = seg_mod.windows_to_segments(flags, scores, window_duration, offset=region_start)
        merged = seg_mod.merge_segments(raw, cfg.merge_gap_s)

        if region_end is None:
            region_end = region_start + len(episode_audio) / sr
        clamped = seg_mod.clamp_segments(merged, region_start, region_end)
        kept = seg_mod.filter_duration(
            clamped, cfg.min_segment_duration_s, cfg.max_segment_duration_s
        )

        matches = [
            SegmentMatch(
                show_id=episode.show_id,
                episode_id=episode.id,
                season_number=episode.season_number,
                start_offset=round(seg["start"], 3),
                end_offset=round(seg["end"], 3),
                confidence=round(min(1.0, max(0.0, seg["score"])), 4),
                label=label,
            )
            for seg in kept
        ]
        return sort_matches(matches)
