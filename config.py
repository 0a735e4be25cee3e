# config.py

DEFAULT_PARAMS = {
    # =================================================================================
    # 1. Template Selection
    # Controls the search for a reliable signal chunk and the cutting of candidate beats.
    # =================================================================================
    "time_window_sec": 10,          # Length (seconds) of each chunk scanned for a reliable template.
    "pre_sec": 0.2,                 # Interval (seconds) kept before each envelope peak in a candidate beat.
    "post_sec": 0.5,                # Interval (seconds) kept after each envelope peak in a candidate beat.

    # =================================================================================
    # 2. Envelope Extraction
    # Governs the coarse beat localization used by the reliability gate.
    # =================================================================================
    "envelope_fn": None,            # Callable signal -> envelope. None = 4th power + 3 Hz zero-phase low-pass.
    "envelope_min_prominence": 0.25, # Minimum prominence of peaks in the max-normalized envelope.

    # =================================================================================
    # 3. NCC Peak Localization
    # Rules for turning the normalized cross-correlation trace into heartbeats.
    # =================================================================================
    "ncc_min_prominence": 0.5,      # Minimum prominence of an NCC peak to be accepted as a heartbeat.
    "ncc_min_distance_samples": None, # Minimum distance (samples) between heartbeats. None = fs / 2 (0.5 s).
}

# Settings used by the reporting and reference-comparison layer, not by the detector.
REPORT_PARAMS = {
    "reference_tolerance_ms": 100.0,  # A detected beat matches a reference peak if closer than this.
    "hrv_window_size_beats": 40,      # Sliding window size (in beats) for windowed HRV calculation.
    "hrv_step_size_beats": 5,         # How many beats the HRV window moves in each step.
}
