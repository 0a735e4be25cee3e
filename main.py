import argparse
import logging
import os
import sys
import warnings
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.io import wavfile

from autotempmatch import TemplateMatchParams, detect_heartbeats, hilbert_envelope
from config import DEFAULT_PARAMS, REPORT_PARAMS
from ibi_analysis import calculate_windowed_hrv, compare_inter_beat_intervals, evaluate_detection, heart_rate_summary
from reporting import ReportGenerator


def load_signal(file_path: str, fs: Optional[float] = None, column: Optional[str] = None) -> Tuple[np.ndarray, float]:
    """Reads a mono signal from a WAV file, or from a CSV column when `fs` is given."""
    if os.path.splitext(file_path)[1].lower() == ".wav":
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            sample_rate, data = wavfile.read(file_path)
        if data.ndim > 1:
            data = np.mean(data, axis=1)
        return data.astype(float), float(sample_rate)

    if fs is None:
        raise ValueError("A sampling frequency (--fs) is required for non-WAV inputs.")
    frame = pd.read_csv(file_path)
    series = frame[column] if column else frame.iloc[:, 0]
    return series.to_numpy(dtype=float), float(fs)


def load_reference_peaks(file_path: str) -> np.ndarray:
    """Reads reference peak sample indices (e.g. ECG R-peaks) from the first CSV column."""
    return pd.read_csv(file_path).iloc[:, 0].to_numpy(dtype=int)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ECG-free heartbeat detection by automatic template matching")
    parser.add_argument("input", help="Path to a .wav recording or a .csv file with one signal column")
    parser.add_argument("--fs", type=float, default=None, help="Sampling frequency (Hz) of a CSV input")
    parser.add_argument("--column", default=None, help="CSV column holding the signal (default: first)")
    parser.add_argument("--reference", default=None, help="CSV of reference peak sample indices (e.g. ECG R-peaks)")
    parser.add_argument("--output-dir", default=os.path.join(os.getcwd(), "processed_files"))
    parser.add_argument("--time-window", type=float, default=DEFAULT_PARAMS["time_window_sec"])
    parser.add_argument("--pre", type=float, default=DEFAULT_PARAMS["pre_sec"])
    parser.add_argument("--post", type=float, default=DEFAULT_PARAMS["post_sec"])
    parser.add_argument("--hilbert-envelope", action="store_true", help="Use |hilbert(x)| as template selection envelope")
    parser.add_argument("--envelope-prominence", type=float, default=DEFAULT_PARAMS["envelope_min_prominence"])
    parser.add_argument("--ncc-prominence", type=float, default=DEFAULT_PARAMS["ncc_min_prominence"])
    parser.add_argument("--ncc-distance", type=float, default=DEFAULT_PARAMS["ncc_min_distance_samples"],
                        help="Minimum distance (samples) between heartbeats (default: fs / 2)")
    parser.add_argument("--tolerance-ms", type=float, default=REPORT_PARAMS["reference_tolerance_ms"])
    parser.add_argument("--hrv-window", type=int, default=REPORT_PARAMS["hrv_window_size_beats"],
                        help="Windowed HRV size in beats")
    parser.add_argument("--hrv-step", type=int, default=REPORT_PARAMS["hrv_step_size_beats"],
                        help="Beats the HRV window advances per step")
    return parser


def main(argv=None) -> int:
    """
    Runs heartbeat detection on one recording and writes the reports.
    Returns the process exit code.
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - [%(levelname)s] - %(message)s',
        stream=sys.stdout
    )
    args = build_parser().parse_args(argv)

    params = TemplateMatchParams(
        time_window_sec=args.time_window,
        pre_sec=args.pre,
        post_sec=args.post,
        envelope_fn=hilbert_envelope if args.hilbert_envelope else None,
        envelope_min_prominence=args.envelope_prominence,
        ncc_min_prominence=args.ncc_prominence,
        ncc_min_distance_samples=args.ncc_distance,
    )

    try:
        logging.info(f"--- Processing file: {os.path.basename(args.input)} ---")
        signal, fs = load_signal(args.input, args.fs, args.column)
        result = detect_heartbeats(signal, fs, params)

        os.makedirs(args.output_dir, exist_ok=True)
        reporter = ReportGenerator(args.input, args.output_dir)
        reporter.save_analysis_settings(result, fs)

        detection_stats = agreement = None
        if args.reference and result.success:
            reference = load_reference_peaks(args.reference)
            detection_stats = evaluate_detection(result.heartbeats, reference, fs, args.tolerance_ms)
            agreement = compare_inter_beat_intervals(result.heartbeats, reference, fs, args.tolerance_ms)

        windowed_hrv = None
        if result.success:
            reporter.save_beats_csv(result, fs)
            hrv_params = {"hrv_window_size_beats": args.hrv_window, "hrv_step_size_beats": args.hrv_step}
            windowed_hrv = calculate_windowed_hrv(result.heartbeats, fs, hrv_params)
        reporter.save_analysis_summary(
            result, fs, heart_rate_summary(result.heartbeats, fs), detection_stats, agreement, windowed_hrv
        )
    except Exception as e:
        logging.error(f"Analysis failed: {e}")
        return 1

    if not result.success:
        logging.warning(result.message)
        return 2
    logging.info(f"Results saved to: {args.output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
