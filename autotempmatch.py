import logging
import math
from dataclasses import dataclass, field, fields, replace
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from scipy.signal import butter, correlate, filtfilt, hilbert
from scipy.signal import find_peaks as scipy_find_peaks

from config import DEFAULT_PARAMS

NO_RELIABLE_SEGMENT_MSG = "No reliable segment was found for the selection of a heartbeat template."

# A chunk is reliable only if the MADNN of its envelope IBIs stays below this fraction of fs.
MADNN_THRESHOLD_FACTOR = 0.335

# Relative tolerance under which a correlation window is treated as flat (zero variance).
FLAT_WINDOW_TOLERANCE = 1e3 * np.finfo(float).eps


class ConfigurationError(ValueError):
    """Raised when the detection options are malformed. Nothing has been computed yet."""


def _round_half_up(value: float) -> int:
    """Rounds seconds-to-samples conversions with halves going up."""
    return int(math.floor(value + 0.5))


def _is_finite_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        return False
    return bool(np.isfinite(value))


# --- Configuration Record ---

@dataclass(frozen=True)
class TemplateMatchParams:
    """
    Immutable set of options for one detection run.
    Defaults mirror config.DEFAULT_PARAMS; `ncc_min_distance_samples=None` means fs / 2.
    """
    time_window_sec: float = DEFAULT_PARAMS["time_window_sec"]
    pre_sec: float = DEFAULT_PARAMS["pre_sec"]
    post_sec: float = DEFAULT_PARAMS["post_sec"]
    envelope_fn: Optional[Callable[[np.ndarray], np.ndarray]] = DEFAULT_PARAMS["envelope_fn"]
    envelope_min_prominence: float = DEFAULT_PARAMS["envelope_min_prominence"]
    ncc_min_prominence: float = DEFAULT_PARAMS["ncc_min_prominence"]
    ncc_min_distance_samples: Optional[float] = DEFAULT_PARAMS["ncc_min_distance_samples"]

    @classmethod
    def names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def _check_names(cls, options: Dict):
        unknown = sorted(set(options) - set(cls.names()))
        if unknown:
            raise ConfigurationError(
                f"Unknown parameter(s): {', '.join(unknown)}. "
                f"Each option must be one of: {', '.join(cls.names())}."
            )

    @classmethod
    def from_dict(cls, params: Dict) -> "TemplateMatchParams":
        """Builds the record from a DEFAULT_PARAMS-style dict. None values fall back to the defaults."""
        cls._check_names(params)
        return cls(**{name: value for name, value in params.items() if value is not None})

    def with_overrides(self, **overrides) -> "TemplateMatchParams":
        self._check_names(overrides)
        return replace(self, **{name: value for name, value in overrides.items() if value is not None})

    def resolved(self, fs: float) -> "TemplateMatchParams":
        """Validates the options against the sampling rate and fills the fs-dependent defaults."""
        if not _is_finite_number(fs) or fs <= 0:
            raise ConfigurationError(f"Sampling frequency must be a positive finite number, got {fs!r}.")

        for name in ("time_window_sec", "pre_sec", "post_sec", "envelope_min_prominence", "ncc_min_prominence"):
            value = getattr(self, name)
            if not _is_finite_number(value):
                raise ConfigurationError(f"'{name}' must be a finite number, got {value!r}.")
            if value < 0:
                raise ConfigurationError(f"'{name}' cannot be negative, got {value}.")

        if _round_half_up(self.time_window_sec * fs) < 1:
            raise ConfigurationError(f"'time_window_sec' of {self.time_window_sec}s is shorter than one sample at {fs}Hz.")
        if _round_half_up(self.pre_sec * fs) + _round_half_up(self.post_sec * fs) < 2:
            raise ConfigurationError("'pre_sec' + 'post_sec' must span at least two samples.")
        if self.envelope_fn is not None and not callable(self.envelope_fn):
            raise ConfigurationError("'envelope_fn' must be a callable taking the signal and returning its envelope.")

        distance = self.ncc_min_distance_samples
        if distance is None:
            distance = fs / 2
        elif not _is_finite_number(distance):
            raise ConfigurationError(f"'ncc_min_distance_samples' must be a finite number, got {distance!r}.")
        if distance < 1:
            raise ConfigurationError(f"'ncc_min_distance_samples' must be at least 1 sample, got {distance}.")

        return replace(self, ncc_min_distance_samples=float(distance))

    def to_dict(self) -> Dict:
        """JSON-friendly view of the parameters, with the envelope function reported by name."""
        result = {name: getattr(self, name) for name in self.names()}
        fn = self.envelope_fn
        result["envelope_fn"] = "default" if fn is None else getattr(fn, "__name__", repr(fn))
        return result


# --- Envelope Extraction ---

def lowpass_power_envelope(fs: float, power: int = 4, cutoff_hz: float = 3.0, order: int = 2) -> Callable[[np.ndarray], np.ndarray]:
    """Returns x -> zero-phase low-pass of x**power, one smooth lobe per heartbeat."""
    nyquist = 0.5 * fs
    if cutoff_hz >= nyquist:
        raise ConfigurationError(
            f"Cannot create a {cutoff_hz}Hz envelope filter. The sample rate of {fs}Hz is too low."
        )
    b, a = butter(order, cutoff_hz / nyquist)

    def envelope(x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        padlen = min(3 * max(len(a), len(b)), x.size - 1)
        smoothed = filtfilt(b, a, x ** power, padlen=padlen)
        # Filter ringing can dip slightly below zero
        return np.maximum(smoothed, 0.0)

    envelope.__name__ = f"lowpass_power_envelope(power={power}, cutoff_hz={cutoff_hz})"
    return envelope


def hilbert_envelope(x: np.ndarray) -> np.ndarray:
    """Magnitude of the analytic signal."""
    return np.abs(hilbert(np.asarray(x, dtype=float)))


def extract_envelope(signal: np.ndarray, fs: float, envelope_fn: Optional[Callable] = None) -> np.ndarray:
    envelope_fn = envelope_fn if envelope_fn is not None else lowpass_power_envelope(fs)
    envelope = np.asarray(envelope_fn(signal), dtype=float)
    if envelope.shape != signal.shape:
        raise ValueError(
            f"Envelope function returned shape {envelope.shape}, expected {signal.shape}."
        )
    return envelope


def normalize_abs(x: np.ndarray) -> np.ndarray:
    """Scales x by its maximum absolute value. An all-zero input stays all-zero."""
    peak = np.max(np.abs(x)) if x.size else 0.0
    if peak == 0 or not np.isfinite(peak):
        return np.zeros_like(x, dtype=float)
    return x / peak


# --- Peak Finding ---

def _select_by_distance(peaks: np.ndarray, heights: np.ndarray, min_distance: float) -> np.ndarray:
    """Keeps the highest peaks first and drops every neighbour closer than min_distance."""
    keep = np.ones(peaks.size, dtype=bool)
    # Ascending by height, then by index: walking it backwards gives the later peak priority on ties.
    order = np.lexsort((peaks, heights))
    for i in order[::-1]:
        if not keep[i]:
            continue
        j = i - 1
        while j >= 0 and peaks[i] - peaks[j] < min_distance:
            keep[j] = False
            j -= 1
        j = i + 1
        while j < peaks.size and peaks[j] - peaks[i] < min_distance:
            keep[j] = False
            j += 1
    return peaks[keep]


def find_peaks(values: np.ndarray, min_prominence: float, min_distance: float = 0) -> np.ndarray:
    """
    Local maxima of `values` with prominence >= min_prominence, then thinned so that
    surviving peaks are at least `min_distance` samples apart. Returns sorted indices,
    possibly empty.
    """
    values = np.asarray(values, dtype=float)
    if values.size < 3:
        return np.array([], dtype=int)

    peaks, _ = scipy_find_peaks(values, prominence=min_prominence)
    if peaks.size > 1 and np.any(np.diff(peaks) < min_distance):
        peaks = _select_by_distance(peaks, values[peaks], min_distance)
    return peaks.astype(int)


# --- Template Selection ---

def madnn(ibi: np.ndarray) -> float:
    """median(IBI - mean(IBI)). Signed on purpose; NaN when there are no intervals."""
    ibi = np.asarray(ibi, dtype=float)
    if ibi.size == 0:
        return float("nan")
    return float(np.median(ibi - np.mean(ibi)))


def segment_candidates(window_signal: np.ndarray, peaks: np.ndarray, n_pre: int, n_post: int,
                       offset: int = 0) -> Tuple[np.ndarray, np.ndarray]:
    """
    Cuts [p - n_pre + 1, p + n_post] around each local peak p. Segments crossing the
    window bounds are dropped. Returns (segments, absolute sample indices), both
    shaped (n_segments, n_pre + n_post).
    """
    peaks = np.asarray(peaks, dtype=int)
    starts = peaks - n_pre + 1
    ends = peaks + n_post + 1
    inside = (starts >= 0) & (ends <= window_signal.size)
    local_windows = starts[inside, None] + np.arange(n_pre + n_post)
    return window_signal[local_windows], local_windows + offset


def correlation_matrix(segments: np.ndarray) -> np.ndarray:
    """
    M[i, j] = max over lags of the 'coeff'-normalized cross-correlation of segments i and j.
    Unit diagonal; pairs involving a zero-energy segment correlate as 0.
    """
    n_segments = segments.shape[0]
    matrix = np.eye(n_segments)
    energy = np.sum(segments ** 2, axis=1)
    for i in range(n_segments):
        for j in range(i + 1, n_segments):
            norm = np.sqrt(energy[i] * energy[j])
            if norm > 0:
                matrix[i, j] = matrix[j, i] = np.max(correlate(segments[i], segments[j], mode="full")) / norm
    return matrix


def rank_candidates(matrix: np.ndarray) -> Tuple[int, np.ndarray]:
    """Index of the candidate with the highest mean/std correlation ratio, and all ratios."""
    if matrix.shape[0] == 1:
        return 0, np.array([np.inf])
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = matrix.mean(axis=0) / matrix.std(axis=0, ddof=1)
    scores = np.where(np.isnan(scores), -np.inf, scores)
    return int(np.argmax(scores)), scores


@dataclass(frozen=True)
class WindowReport:
    """Verdict of the reliability gate on one signal chunk."""
    start: int
    end: int
    n_peaks: int
    madnn: float
    n_candidates: int
    accepted: bool


@dataclass(frozen=True)
class Template:
    waveform: np.ndarray
    sample_window: np.ndarray
    correlation_matrix: np.ndarray
    scores: np.ndarray
    selected_index: int


class TemplateSelector:
    """
    Scans the signal in consecutive, non-overlapping chunks until one passes the
    reliability gate (enough envelope peaks, regular inter-beat intervals), then picks
    the candidate beat of that chunk that correlates best and most consistently with
    the others.
    """
    def __init__(self, signal: np.ndarray, fs: float, params: TemplateMatchParams):
        self.signal = signal
        self.fs = fs
        self.params = params
        self.window_length = _round_half_up(params.time_window_sec * fs)
        self.n_pre = _round_half_up(params.pre_sec * fs)
        self.n_post = _round_half_up(params.post_sec * fs)
        # Roughly a 30 BPM floor over the chunk
        self.min_beats = math.floor(params.time_window_sec / 2)
        self.madnn_threshold = MADNN_THRESHOLD_FACTOR * fs
        self.windows: List[WindowReport] = []

    def window_starts(self) -> range:
        return range(0, self.signal.size - self.window_length + 1, self.window_length)

    def select(self) -> Optional[Template]:
        """Returns the selected template, or None if no chunk is reliable."""
        if self.signal.size < self.window_length:
            logging.warning(
                f"Signal of {self.signal.size} samples is shorter than one template selection window "
                f"({self.window_length} samples)."
            )
            return None

        envelope = extract_envelope(self.signal, self.fs, self.params.envelope_fn)

        for start in self.window_starts():
            end = start + self.window_length
            template = self._evaluate_window(start, end, envelope[start:end])
            if template is not None:
                return template
        return None

    def _evaluate_window(self, start: int, end: int, envelope_chunk: np.ndarray) -> Optional[Template]:
        peaks = find_peaks(normalize_abs(envelope_chunk), self.params.envelope_min_prominence)
        spread = madnn(np.diff(peaks))
        reliable = peaks.size >= self.min_beats and spread < self.madnn_threshold

        segments = np.empty((0, self.n_pre + self.n_post))
        sample_windows = np.empty((0, self.n_pre + self.n_post), dtype=int)
        if reliable:
            segments, sample_windows = segment_candidates(
                self.signal[start:end], peaks, self.n_pre, self.n_post, offset=start
            )
            if segments.shape[0] == 0:
                logging.info(f"Chunk [{start}, {end}) passed the gate but no candidate beat fits inside it.")
                reliable = False

        self.windows.append(WindowReport(start, end, int(peaks.size), spread, int(segments.shape[0]), reliable))
        if not reliable:
            logging.info(
                f"Rejected chunk [{start}, {end}): {peaks.size} envelope peaks (min {self.min_beats}), "
                f"MADNN {spread:.2f} (max {self.madnn_threshold:.2f})."
            )
            return None

        matrix = correlation_matrix(segments)
        best, scores = rank_candidates(matrix)
        logging.info(
            f"Accepted chunk [{start}, {end}) with {peaks.size} envelope peaks. "
            f"Selected candidate {best + 1} of {segments.shape[0]} as template."
        )
        return Template(
            waveform=segments[best].copy(),
            sample_window=sample_windows[best].copy(),
            correlation_matrix=matrix,
            scores=scores,
            selected_index=best,
        )


# --- Normalized Cross-Correlation ---

def template_anchor(template: np.ndarray) -> int:
    """Location of the template maximum within its first half."""
    return int(np.argmax(template[: max(1, template.size // 2)]))


def cross_correlate(signal: np.ndarray, template: np.ndarray, anchor_offset: int = 0) -> np.ndarray:
    """
    Sliding normalized (Pearson) cross-correlation of `template` against `signal`.

    The coefficient of the alignment starting at sample k is stored at k + anchor_offset,
    so trace peaks land on the signal feature matching template[anchor_offset]. Alignments
    where the template does not fully overlap the signal, and flat signal windows, are 0.
    Negative correlations are clipped to 0. The trace has the same length as the signal.
    """
    signal = np.asarray(signal, dtype=float)
    template = np.asarray(template, dtype=float)
    n, m = signal.size, template.size
    trace = np.zeros(n)
    if m == 0 or n < m:
        return trace
    if not 0 <= anchor_offset <= m - 1:
        raise ValueError(f"anchor_offset {anchor_offset} is outside the template (length {m}).")

    centered_template = template - template.mean()
    template_energy = np.dot(centered_template, centered_template)
    if template_energy <= 0:
        return trace

    centered = signal - signal.mean()
    numerator = correlate(centered, centered_template, mode="valid")

    cumsum = np.concatenate(([0.0], np.cumsum(centered)))
    cumsum_sq = np.concatenate(([0.0], np.cumsum(centered ** 2)))
    window_sum = cumsum[m:] - cumsum[:-m]
    window_energy = np.maximum((cumsum_sq[m:] - cumsum_sq[:-m]) - window_sum ** 2 / m, 0.0)

    ncc = np.zeros(n - m + 1)
    usable = window_energy > FLAT_WINDOW_TOLERANCE * cumsum_sq[-1]
    ncc[usable] = numerator[usable] / np.sqrt(window_energy[usable] * template_energy)

    length = min(ncc.size, n - anchor_offset)
    trace[anchor_offset: anchor_offset + length] = ncc[:length]
    return np.clip(trace, 0.0, 1.0)


# --- Detection Pipeline ---

def _readonly(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class DetectionResult:
    """Outputs of one detection run. Arrays are read-only."""
    heartbeats: np.ndarray
    template: np.ndarray
    template_window: np.ndarray
    ncc_trace: np.ndarray
    params: TemplateMatchParams
    message: str = ""
    windows: List[WindowReport] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.template.size > 0


def _as_signal(signal) -> np.ndarray:
    """Copies the input into a 1-D float array, rejecting non-finite samples."""
    array = np.array(signal, dtype=float)
    if array.ndim != 1:
        raise ValueError(f"Signal must be one-dimensional, got shape {array.shape}.")
    if not np.all(np.isfinite(array)):
        raise ValueError("Signal contains NaN or infinite samples.")
    return array


def detect_heartbeats(signal, fs: float, params=None, **overrides) -> DetectionResult:
    """
    Locates heartbeats in a cardiomechanical signal by automatic template matching.

    `params` may be a TemplateMatchParams, a DEFAULT_PARAMS-style dict or None (defaults);
    keyword overrides are applied on top of it. When no chunk of the signal is reliable
    enough to select a template, an empty result with an explanatory message is returned.
    """
    if params is None:
        params = TemplateMatchParams()
    elif isinstance(params, dict):
        params = TemplateMatchParams.from_dict(params)
    elif not isinstance(params, TemplateMatchParams):
        raise ConfigurationError(
            f"params must be a TemplateMatchParams, a dict or None, got {type(params).__name__}."
        )
    if overrides:
        params = params.with_overrides(**overrides)
    params = params.resolved(fs)
    if params.envelope_fn is None:
        # Fail on an unusable sampling rate before touching the signal
        lowpass_power_envelope(fs)
    signal = _as_signal(signal)

    logging.info(f"--- STAGE 1: Selecting heartbeat template ({signal.size} samples at {fs}Hz) ---")
    selector = TemplateSelector(signal, fs, params)
    template = selector.select()

    if template is None:
        logging.warning(f"{NO_RELIABLE_SEGMENT_MSG} Tried {len(selector.windows)} chunk(s).")
        empty = _readonly(np.array([], dtype=float))
        return DetectionResult(
            heartbeats=_readonly(np.array([], dtype=int)),
            template=empty,
            template_window=_readonly(np.array([], dtype=int)),
            ncc_trace=empty,
            params=params,
            message=NO_RELIABLE_SEGMENT_MSG,
            windows=selector.windows,
        )

    logging.info("--- STAGE 2: Normalized cross-correlation with the selected template ---")
    anchor = template_anchor(template.waveform)
    trace = cross_correlate(signal, template.waveform, anchor)

    logging.info("--- STAGE 3: Localizing NCC peaks ---")
    heartbeats = find_peaks(trace, params.ncc_min_prominence, params.ncc_min_distance_samples)
    if heartbeats.size == 0:
        logging.info("No NCC peak reached the minimum prominence. No heartbeats detected.")
    else:
        logging.info(f"Detected {heartbeats.size} heartbeats.")

    return DetectionResult(
        heartbeats=_readonly(heartbeats),
        template=_readonly(template.waveform),
        template_window=_readonly(template.sample_window),
        ncc_trace=_readonly(trace),
        params=params,
        message=f"Detected {heartbeats.size} heartbeats.",
        windows=selector.windows,
    )
