import logging
from dataclasses import dataclass, asdict
from typing import Dict

import numpy as np
import pandas as pd
from scipy import stats

from config import REPORT_PARAMS


def inter_beat_intervals_ms(beats: np.ndarray, fs: float) -> np.ndarray:
    """Inter-beat intervals in milliseconds."""
    return 1000.0 * np.diff(np.asarray(beats, dtype=float)) / fs


def heart_rate_summary(beats: np.ndarray, fs: float) -> Dict:
    """Overall heart rate and time-domain HRV figures of a beat sequence."""
    ibi_ms = pd.Series(inter_beat_intervals_ms(beats, fs))
    summary = {'beat_count': int(len(beats))}
    if ibi_ms.empty:
        logging.warning(f"Not enough beats ({len(beats)}) to compute inter-beat intervals.")
        return summary

    bpm = 60000.0 / ibi_ms
    summary.update({
        'mean_ibi_ms': ibi_ms.mean(),
        'sdnn_ms': ibi_ms.std(ddof=1) if len(ibi_ms) > 1 else float('nan'),
        'rmssd_ms': float(np.sqrt(np.mean(np.diff(ibi_ms.values) ** 2))) if len(ibi_ms) > 1 else float('nan'),
        'avg_bpm': bpm.mean(),
        'min_bpm': bpm.min(),
        'max_bpm': bpm.max(),
    })
    return summary


def calculate_windowed_hrv(beats: np.ndarray, fs: float, params: Dict = REPORT_PARAMS) -> pd.DataFrame:
    """
    Heart rate and HRV over a sliding window of `hrv_window_size_beats` inter-beat intervals,
    advanced by `hrv_step_size_beats`. Each row is stamped with the midpoint between the first
    and last beat of its window. SDNN uses the sample standard deviation, as in heart_rate_summary.
    """
    window = int(params['hrv_window_size_beats'])
    step = int(params['hrv_step_size_beats'])
    columns = ['time_sec', 'bpm', 'sdnn_ms', 'rmssd_ms']
    if window < 2 or step < 1:
        raise ValueError(f"Windowed HRV needs a window of at least 2 intervals and a positive step, got {window} and {step}.")

    if len(beats) <= window:
        logging.warning(f"Not enough beats ({len(beats)}) to perform windowed HRV analysis with a window of {window} beats.")
        return pd.DataFrame(columns=columns)

    beat_times_sec = np.asarray(beats, dtype=float) / fs
    ibi_ms = pd.Series(inter_beat_intervals_ms(beats, fs))
    # Row j describes the window of intervals ending at j, i.e. beats j - window + 1 .. j + 1
    last = np.arange(len(ibi_ms))
    first = np.maximum(last - window + 1, 0)

    windowed = pd.DataFrame({
        'time_sec': (beat_times_sec[first] + beat_times_sec[last + 1]) / 2.0,
        'bpm': 60000.0 / ibi_ms.rolling(window).mean(),
        'sdnn_ms': ibi_ms.rolling(window).std(),
        'rmssd_ms': np.sqrt(ibi_ms.diff().pow(2).rolling(window - 1).mean()),
    }, columns=columns)
    windowed = windowed.iloc[window - 1::step].reset_index(drop=True)

    logging.info(f"Beat-based windowed HRV analysis complete. Generated {len(windowed)} data points.")
    return windowed


# --- Comparison Against a Reference Beat Sequence ---

def match_beats(detected: np.ndarray, reference: np.ndarray, fs: float,
                tolerance_ms: float = REPORT_PARAMS['reference_tolerance_ms']) -> pd.DataFrame:
    """
    One-to-one matching of reference peaks and detected beats within the tolerance.
    Candidate pairs are claimed closest first (ties go to the earlier reference peak), so a
    detection lying between two reference peaks goes to the nearer one.
    Returns one row per reference peak: reference index, detected index (-1 if unmatched)
    and the timing error in ms.
    """
    detected = np.sort(np.asarray(detected, dtype=int))
    reference = np.asarray(reference, dtype=int)
    tolerance = tolerance_ms * 1e-3 * fs

    lo = np.searchsorted(detected, reference - tolerance, side='left')
    hi = np.searchsorted(detected, reference + tolerance, side='right')
    pairs = sorted(
        (abs(int(detected[k]) - int(ref_peak)), i, k)
        for i, (ref_peak, first, last) in enumerate(zip(reference, lo, hi))
        for k in range(first, last)
    )

    matches = np.full(reference.size, -1, dtype=int)
    used = np.zeros(detected.size, dtype=bool)
    for _, i, k in pairs:
        if matches[i] < 0 and not used[k]:
            matches[i] = detected[k]
            used[k] = True

    rows = []
    for ref_peak, matched in zip(reference, matches):
        matched = int(matched)
        rows.append({
            'reference': int(ref_peak),
            'detected': matched,
            'error_ms': 1000.0 * (matched - ref_peak) / fs if matched >= 0 else np.nan,
        })
    return pd.DataFrame(rows, columns=['reference', 'detected', 'error_ms'])


def evaluate_detection(detected: np.ndarray, reference: np.ndarray, fs: float,
                       tolerance_ms: float = REPORT_PARAMS['reference_tolerance_ms']) -> Dict:
    """Sensitivity, positive predictive value and F1 of the detected beats against the reference."""
    matches = match_beats(detected, reference, fs, tolerance_ms)
    tp = int((matches['detected'] >= 0).sum())
    fn = len(reference) - tp
    fp = len(detected) - tp

    sensitivity = tp / (tp + fn) if (tp + fn) > 0 else float('nan')
    ppv = tp / (tp + fp) if (tp + fp) > 0 else float('nan')
    f1_score = 2 * sensitivity * ppv / (sensitivity + ppv) if (sensitivity + ppv) > 0 else float('nan')

    return {
        'tp': tp,
        'fp': fp,
        'fn': fn,
        'sensitivity': sensitivity,
        'ppv': ppv,
        'f1_score': f1_score,
        'timing_mae_ms': matches['error_ms'].abs().mean() if tp else float('nan'),
    }


@dataclass(frozen=True)
class IBIAgreement:
    """Regression, correlation and Bland-Altman agreement of detected vs reference IBIs (ms)."""
    n: int
    slope: float
    intercept: float
    r: float
    bias: float
    sd: float
    loa_low: float
    loa_high: float

    def to_dict(self) -> Dict:
        return asdict(self)


def paired_intervals(detected: np.ndarray, reference: np.ndarray, fs: float,
                     tolerance_ms: float = REPORT_PARAMS['reference_tolerance_ms']) -> pd.DataFrame:
    """IBIs (ms) of consecutive reference peaks whose two bounding beats were both matched."""
    matches = match_beats(detected, reference, fs, tolerance_ms)
    both_matched = (matches['detected'].values[:-1] >= 0) & (matches['detected'].values[1:] >= 0)
    ibi_reference = inter_beat_intervals_ms(matches['reference'].values, fs)
    ibi_detected = inter_beat_intervals_ms(matches['detected'].values, fs)
    return pd.DataFrame({
        'time_sec': matches['reference'].values[1:][both_matched] / fs,
        'ibi_reference_ms': ibi_reference[both_matched],
        'ibi_detected_ms': ibi_detected[both_matched],
    })


def compare_inter_beat_intervals(detected: np.ndarray, reference: np.ndarray, fs: float,
                                 tolerance_ms: float = REPORT_PARAMS['reference_tolerance_ms']) -> IBIAgreement:
    """
    Linear regression (detected on reference), Pearson correlation and Bland-Altman
    statistics of the paired inter-beat intervals. Statistics are NaN when fewer than
    two intervals could be paired.
    """
    pairs = paired_intervals(detected, reference, fs, tolerance_ms)
    n = len(pairs)
    if n < 2:
        logging.warning(f"Only {n} inter-beat interval(s) could be paired with the reference. Agreement is undefined.")
        return IBIAgreement(n, *([float('nan')] * 7))

    x = pairs['ibi_reference_ms'].values
    y = pairs['ibi_detected_ms'].values
    errors = y - x
    bias = float(np.mean(errors))
    sd = float(np.std(errors, ddof=1))

    if np.ptp(x) > 0:
        fit = stats.linregress(x, y)
        slope, intercept, r = float(fit.slope), float(fit.intercept), float(fit.rvalue)
    else:
        logging.warning("Reference inter-beat intervals are constant. Regression is undefined.")
        slope = intercept = r = float('nan')

    logging.info(f"IBI agreement on {n} intervals: bias = {bias:.2f} ms, LoA = [{bias - 1.96 * sd:.2f} {bias + 1.96 * sd:.2f}] ms")
    return IBIAgreement(
        n=n, slope=slope, intercept=intercept, r=r,
        bias=bias, sd=sd, loa_low=bias - 1.96 * sd, loa_high=bias + 1.96 * sd,
    )
