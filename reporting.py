import datetime
import json
import logging
import os
from typing import Dict, Optional

import numpy as np
import pandas as pd

from autotempmatch import DetectionResult
from ibi_analysis import IBIAgreement


class ReportGenerator:
    """Handles the creation of text-based analysis reports."""
    def __init__(self, file_name: str, output_directory: str):
        self.file_name = file_name
        self.output_directory = output_directory
        self.base_name = os.path.basename(os.path.splitext(file_name)[0])

    def save_analysis_settings(self, result: DetectionResult, fs: float) -> str:
        """Saves the parameters actually used by the detector to a JSON file."""
        settings_path = os.path.join(self.output_directory, f"{self.base_name}_Analysis_Settings.json")
        settings_to_save = {'sample_rate': fs, **result.params.to_dict()}
        with open(settings_path, "w", encoding="utf-8") as f:
            json.dump(settings_to_save, f, indent=4, default=float)
        logging.info(f"Analysis settings saved to {settings_path}")
        return settings_path

    def save_beats_csv(self, result: DetectionResult, fs: float) -> str:
        """Writes one row per detected heartbeat with its time and NCC value."""
        output_path = os.path.join(self.output_directory, f"{self.base_name}_Heartbeats.csv")
        beats = np.asarray(result.heartbeats)
        pd.DataFrame({
            'sample': beats,
            'time_sec': beats / fs,
            'ncc': result.ncc_trace[beats] if beats.size else np.array([]),
        }).to_csv(output_path, index=False)
        logging.info(f"Heartbeat list saved to {output_path}")
        return output_path

    def save_analysis_summary(self, result: DetectionResult, fs: float, hr_summary: Dict,
                              detection_stats: Optional[Dict] = None,
                              agreement: Optional[IBIAgreement] = None,
                              windowed_hrv: Optional[pd.DataFrame] = None) -> str:
        """Saves a Markdown summary of the detection and, if available, the reference comparison."""
        output_path = os.path.join(self.output_directory, f"{self.base_name}_Analysis_Summary.md")

        with open(output_path, "w", encoding="utf-8") as f:
            self._write_summary_header(f)
            self._write_detection_section(f, result, fs)
            self._write_heart_rate_section(f, hr_summary)
            if windowed_hrv is not None:
                self._write_windowed_hrv_section(f, windowed_hrv)
            if detection_stats is not None:
                self._write_reference_section(f, detection_stats, agreement)

        logging.info(f"Markdown analysis summary saved to {output_path}")
        return output_path

    def _write_summary_header(self, f):
        f.write(f"# Heartbeat Detection Report: {os.path.basename(self.file_name)}\n")
        f.write(f"**Generated on:** {datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n")

    def _write_detection_section(self, f, result: DetectionResult, fs: float):
        f.write("## Template Matching\n")
        if not result.success:
            f.write(f"**{result.message}**\n\n")
            f.write(f"- **Chunks Examined:** {len(result.windows)}\n\n")
            return
        start, end = result.template_window[0], result.template_window[-1]
        f.write(f"- **Heartbeats Detected:** {len(result.heartbeats)}\n")
        f.write(f"- **Template Window:** {start / fs:.2f}s - {end / fs:.2f}s (samples {start}-{end})\n")
        f.write(f"- **Chunks Examined:** {len(result.windows)}\n\n")

        f.write("| Chunk | Start (s) | Envelope Peaks | MADNN (samples) | Accepted |\n")
        f.write("|:---:|:---:|:---:|:---:|:---:|\n")
        for i, window in enumerate(result.windows, 1):
            f.write(f"| {i} | {window.start / fs:.1f} | {window.n_peaks} | {window.madnn:.2f} | {'Yes' if window.accepted else 'No'} |\n")
        f.write("\n")

    def _write_heart_rate_section(self, f, hr_summary: Dict):
        f.write("## Heart Rate\n")
        if 'avg_bpm' not in hr_summary:
            f.write("Not enough heartbeats to compute heart rate.\n\n")
            return
        f.write(f"- **Average BPM:** {hr_summary['avg_bpm']:.1f}\n")
        f.write(f"- **BPM Range:** {hr_summary['min_bpm']:.1f} to {hr_summary['max_bpm']:.1f}\n")
        f.write(f"- **Mean IBI:** {hr_summary['mean_ibi_ms']:.1f} ms\n")
        f.write(f"- **SDNN:** {hr_summary['sdnn_ms']:.2f} ms\n")
        f.write(f"- **RMSSD:** {hr_summary['rmssd_ms']:.2f} ms\n\n")

    def _write_reference_section(self, f, detection_stats: Dict, agreement: Optional[IBIAgreement]):
        f.write("## Comparison With Reference Peaks\n")
        f.write(f"- **True Positives:** {detection_stats['tp']}\n")
        f.write(f"- **False Positives:** {detection_stats['fp']}\n")
        f.write(f"- **False Negatives:** {detection_stats['fn']}\n")
        f.write(f"- **Sensitivity:** {detection_stats['sensitivity']:.3f}\n")
        f.write(f"- **PPV:** {detection_stats['ppv']:.3f}\n")
        f.write(f"- **F1:** {detection_stats['f1_score']:.3f}\n\n")
        if agreement is None:
            return
        f.write("### Inter-Beat Interval Agreement\n")
        f.write(f"- **Paired Intervals:** {agreement.n}\n")
        f.write(f"- **Regression:** y = {agreement.slope:.2f}x + {agreement.intercept:.2f}, r = {agreement.r:.3f}\n")
        f.write(f"- **Bias:** {agreement.bias:.2f} ms\n")
        f.write(f"- **Limits of Agreement:** [{agreement.loa_low:.2f} {agreement.loa_high:.2f}] ms\n")

    def _write_windowed_hrv_section(self, f, windowed_hrv: pd.DataFrame):
        f.write("## Heart Rate Variability Over Time\n")
        if windowed_hrv.empty:
            f.write("Not enough heartbeats for windowed HRV analysis.\n\n")
            return
        f.write("| Time (s) | BPM | SDNN (ms) | RMSSD (ms) |\n")
        f.write("|:---:|:---:|:---:|:---:|\n")
        for row in windowed_hrv.itertuples(index=False):
            f.write(f"| {row.time_sec:.1f} | {row.bpm:.1f} | {row.sdnn_ms:.2f} | {row.rmssd_ms:.2f} |\n")
        f.write("\n")
