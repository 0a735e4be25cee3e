import os
import sys
import unittest

import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))
sys.path.append(os.path.dirname(__file__))

from autotempmatch import (
    NO_RELIABLE_SEGMENT_MSG, ConfigurationError, TemplateMatchParams, correlation_matrix,
    cross_correlate, detect_heartbeats, find_peaks, hilbert_envelope, lowpass_power_envelope,
    madnn, normalize_abs, rank_candidates, segment_candidates, template_anchor,
)
from synthetic_signals import FS, pulse_train, scg_pulse


def spike_envelope(positions):
    """Envelope function placing unit spikes at fixed samples, whatever the signal."""
    def envelope(x):
        env = np.zeros_like(x)
        env[positions] = 1.0
        return env
    return envelope


class PeakFinderTestClass(unittest.TestCase):
    def test_prominence(self):
        values = np.array([0, 2, 1, 3, 0], dtype=float)
        self.assertEqual(find_peaks(values, 1.5).tolist(), [3])
        self.assertEqual(find_peaks(values, 0.5).tolist(), [1, 3])

    def test_distance_drops_lower_peak(self):
        values = np.array([0, 2, 0, 1, 0], dtype=float)
        self.assertEqual(find_peaks(values, 0, 3).tolist(), [1])

    def test_distance_tie_keeps_later_peak(self):
        values = np.array([0, 1, 0, 1, 0], dtype=float)
        self.assertEqual(find_peaks(values, 0, 3).tolist(), [3])

    def test_removed_peak_does_not_suppress_others(self):
        values = np.array([0, 3, 0, 2, 0, 1, 0], dtype=float)
        self.assertEqual(find_peaks(values, 0, 3).tolist(), [1, 5])

    def test_no_peaks(self):
        self.assertEqual(find_peaks(np.array([]), 0.1).size, 0)
        self.assertEqual(find_peaks(np.ones(50), 0.1).size, 0)
        self.assertEqual(find_peaks(np.arange(10.0), 0.1).size, 0)

    def test_call_order_independent(self):
        rng = np.random.default_rng(3)
        values = rng.normal(size=500)
        first = find_peaks(values, 0.5, 10)
        find_peaks(values[::-1], 0.2, 4)
        np.testing.assert_array_equal(find_peaks(values, 0.5, 10), first)
        self.assertTrue(np.all(np.diff(first) >= 10))


class EnvelopeTestClass(unittest.TestCase):
    def test_default_envelope_is_non_negative_and_peaks_at_beats(self):
        signal, onsets = pulse_train(n_beats=5)
        envelope = lowpass_power_envelope(FS)(signal)
        self.assertEqual(envelope.shape, signal.shape)
        self.assertTrue(np.all(envelope >= 0))
        peaks = find_peaks(normalize_abs(envelope), 0.25)
        self.assertEqual(len(peaks), 5)
        self.assertTrue(np.all(np.abs(peaks - onsets) < 15))

    def test_cutoff_above_nyquist(self):
        with self.assertRaises(ConfigurationError):
            lowpass_power_envelope(5)

    def test_hilbert_envelope(self):
        x = np.sin(2 * np.pi * 5 * np.arange(400) / FS)
        envelope = hilbert_envelope(x)
        self.assertTrue(np.all(envelope >= 0))
        self.assertAlmostEqual(float(np.median(envelope)), 1.0, places=2)

    def test_normalize_abs(self):
        np.testing.assert_allclose(normalize_abs(np.array([-4.0, 2.0])), [-1.0, 0.5])
        np.testing.assert_array_equal(normalize_abs(np.zeros(4)), np.zeros(4))


class TemplateSelectionTestClass(unittest.TestCase):
    def test_madnn_is_signed(self):
        self.assertAlmostEqual(madnn(np.array([100, 100, 200])), -100 / 3)
        self.assertEqual(madnn(np.array([100, 100, 100])), 0.0)
        self.assertTrue(np.isnan(madnn(np.array([]))))

    def test_segment_candidates(self):
        window_signal = np.arange(20, dtype=float)
        segments, windows = segment_candidates(window_signal, np.array([1, 2, 10, 18]), 3, 4, offset=100)
        self.assertEqual(segments.shape, (2, 7))
        np.testing.assert_array_equal(segments[0], np.arange(0, 7))
        np.testing.assert_array_equal(segments[1], np.arange(8, 15))
        np.testing.assert_array_equal(windows[0], np.arange(100, 107))

    def test_segment_candidates_empty(self):
        segments, windows = segment_candidates(np.zeros(10), np.array([], dtype=int), 3, 4)
        self.assertEqual(segments.shape, (0, 7))
        self.assertEqual(windows.shape, (0, 7))

    def test_correlation_matrix(self):
        a = np.array([0, 1, 2, 1, 0, 0], dtype=float)
        segments = np.vstack([a, np.roll(a, 1), 2 * a, np.zeros(6), -a])
        matrix = correlation_matrix(segments)
        self.assertEqual(matrix.shape, (5, 5))
        np.testing.assert_allclose(np.diag(matrix), 1.0)
        np.testing.assert_allclose(matrix, matrix.T)
        self.assertAlmostEqual(matrix[0, 1], 1.0)
        self.assertAlmostEqual(matrix[0, 2], 1.0)
        self.assertEqual(matrix[0, 3], 0.0)
        self.assertTrue(np.all(matrix[matrix != 0] <= 1.0 + 1e-12))
        self.assertTrue(np.all(matrix >= -1.0 - 1e-12))

    def test_rank_prefers_consistent_candidate(self):
        matrix = np.array([
            [1.0, 0.9, 0.9, 0.1],
            [0.9, 1.0, 0.9, 0.1],
            [0.9, 0.9, 1.0, 0.1],
            [0.1, 0.1, 0.1, 1.0],
        ])
        best, scores = rank_candidates(matrix)
        self.assertIn(best, (0, 1, 2))
        self.assertEqual(scores.size, 4)

    def test_rank_single_candidate(self):
        best, scores = rank_candidates(np.eye(1))
        self.assertEqual(best, 0)

    def test_rank_identical_candidates(self):
        best, _ = rank_candidates(np.ones((3, 3)))
        self.assertEqual(best, 0)

    def test_template_anchor_uses_first_half(self):
        template = np.array([0, 2, 1, 0, 0, 9], dtype=float)
        self.assertEqual(template_anchor(template), 1)


class CrossCorrelationTestClass(unittest.TestCase):
    def test_peak_lines_up_with_anchor(self):
        rng = np.random.default_rng(0)
        template = np.concatenate([np.zeros(10), scg_pulse(), np.zeros(10)])
        signal = 0.01 * rng.normal(size=1000)
        signal[400: 400 + template.size] += template
        anchor = template_anchor(template)

        trace = cross_correlate(signal, template, anchor)
        self.assertEqual(trace.size, signal.size)
        self.assertEqual(int(np.argmax(trace)), 400 + anchor)
        self.assertGreater(trace.max(), 0.95)
        self.assertTrue(np.all((trace >= 0) & (trace <= 1)))

    def test_template_longer_than_signal(self):
        trace = cross_correlate(np.ones(5), np.arange(10.0), 0)
        np.testing.assert_array_equal(trace, np.zeros(5))

    def test_flat_regions_are_zero(self):
        template = scg_pulse()
        trace = cross_correlate(np.zeros(200), template, 2)
        np.testing.assert_array_equal(trace, np.zeros(200))

    def test_anchor_outside_template(self):
        with self.assertRaises(ValueError):
            cross_correlate(np.zeros(100), scg_pulse(), 30)


class ParamsTestClass(unittest.TestCase):
    def test_defaults(self):
        params = TemplateMatchParams().resolved(250)
        self.assertEqual(params.time_window_sec, 10)
        self.assertEqual(params.pre_sec, 0.2)
        self.assertEqual(params.post_sec, 0.5)
        self.assertEqual(params.envelope_min_prominence, 0.25)
        self.assertEqual(params.ncc_min_prominence, 0.5)
        self.assertEqual(params.ncc_min_distance_samples, 125)

    def test_from_dict(self):
        params = TemplateMatchParams.from_dict({'time_window_sec': 5, 'pre_sec': None})
        self.assertEqual(params.time_window_sec, 5)
        self.assertEqual(params.pre_sec, 0.2)
        with self.assertRaises(ConfigurationError):
            TemplateMatchParams.from_dict({'TimeWin': 5})

    def test_invalid_options(self):
        signal, _ = pulse_train()
        with self.assertRaises(ConfigurationError):
            detect_heartbeats(signal, FS, unknown_option=1)
        with self.assertRaises(ConfigurationError):
            detect_heartbeats(signal, FS, pre_sec=-0.1)
        with self.assertRaises(ConfigurationError):
            detect_heartbeats(signal, 0)
        with self.assertRaises(ConfigurationError):
            detect_heartbeats(signal, 5)
        with self.assertRaises(ConfigurationError):
            detect_heartbeats(signal, FS, envelope_fn="hilbert")
        with self.assertRaises(ConfigurationError):
            detect_heartbeats(signal, FS, ncc_min_distance_samples=0.5)

    def test_invalid_signal(self):
        signal, _ = pulse_train()
        signal[10] = np.nan
        with self.assertRaises(ValueError):
            detect_heartbeats(signal, FS)
        with self.assertRaises(ValueError):
            detect_heartbeats(np.zeros((2, 1000)), FS)

    def test_params_of_wrong_type(self):
        signal, _ = pulse_train()
        with self.assertRaises(ConfigurationError):
            detect_heartbeats(signal, FS, [("pre_sec", 0.1)])
        with self.assertRaises(ConfigurationError):
            detect_heartbeats(signal, FS, "defaults", pre_sec=0.1)

    def test_to_dict(self):
        self.assertEqual(TemplateMatchParams().to_dict()['envelope_fn'], 'default')
        self.assertEqual(TemplateMatchParams(envelope_fn=hilbert_envelope).to_dict()['envelope_fn'], 'hilbert_envelope')


class DetectHeartbeatsTestClass(unittest.TestCase):
    def test_periodic_pulses(self):
        signal, onsets = pulse_train()
        result = detect_heartbeats(signal, FS)

        self.assertTrue(result.success)
        self.assertLessEqual(abs(len(result.heartbeats) - 30), 1)
        self.assertTrue(np.all(np.abs(np.diff(result.heartbeats) - 100) <= 3))

    def test_template_containment(self):
        signal, _ = pulse_train()
        result = detect_heartbeats(signal, FS)

        window = np.asarray(result.template_window)
        self.assertEqual(window.size, round(0.2 * FS) + round(0.5 * FS))
        self.assertTrue(np.all(np.diff(window) == 1))
        self.assertGreaterEqual(window[0], 0)
        self.assertLess(window[-1], signal.size)
        np.testing.assert_array_equal(signal[window], result.template)

    def test_trace_bounds(self):
        signal, _ = pulse_train()
        signal = signal + 0.05 * np.random.default_rng(1).normal(size=signal.size)
        result = detect_heartbeats(signal, FS)

        self.assertEqual(result.ncc_trace.size, signal.size)
        self.assertTrue(np.all((result.ncc_trace >= 0) & (result.ncc_trace <= 1)))

    def test_peak_distance_invariant(self):
        signal, _ = pulse_train()
        signal = signal + 0.05 * np.random.default_rng(2).normal(size=signal.size)
        for distance in (50, 70, 95.5):
            result = detect_heartbeats(signal, FS, ncc_min_distance_samples=distance, ncc_min_prominence=0.1)
            self.assertTrue(np.all(np.diff(result.heartbeats) >= distance))

    def test_deterministic(self):
        signal, _ = pulse_train()
        signal = signal + 0.05 * np.random.default_rng(4).normal(size=signal.size)
        first = detect_heartbeats(signal, FS)
        second = detect_heartbeats(signal, FS)
        np.testing.assert_array_equal(first.heartbeats, second.heartbeats)
        np.testing.assert_array_equal(first.template, second.template)
        np.testing.assert_array_equal(first.template_window, second.template_window)

    def test_signal_not_mutated_and_outputs_read_only(self):
        signal, _ = pulse_train()
        original = signal.copy()
        result = detect_heartbeats(signal, FS)
        np.testing.assert_array_equal(signal, original)
        with self.assertRaises(ValueError):
            result.heartbeats[0] = 0

    def test_windows_scanned_in_order(self):
        signal, _ = pulse_train()
        signal[:1000] = 0
        result = detect_heartbeats(signal, FS)

        self.assertTrue(result.success)
        starts = [w.start for w in result.windows]
        self.assertEqual(starts, [0, 1000])
        self.assertFalse(result.windows[0].accepted)
        self.assertTrue(result.windows[-1].accepted)
        for previous, current in zip(result.windows, result.windows[1:]):
            self.assertEqual(current.start, previous.end)
        self.assertGreaterEqual(result.template_window[0], 1000)

    def test_flat_signal_fails(self):
        for signal in (np.ones(3000), np.zeros(3000)):
            result = detect_heartbeats(signal, FS)
            self.assertFalse(result.success)
            self.assertEqual(result.heartbeats.size, 0)
            self.assertEqual(result.template.size, 0)
            self.assertEqual(result.template_window.size, 0)
            self.assertEqual(result.ncc_trace.size, 0)
            self.assertEqual(result.message, NO_RELIABLE_SEGMENT_MSG)
            self.assertEqual(len(result.windows), 3)

    def test_signal_shorter_than_window_fails(self):
        signal, _ = pulse_train(n_beats=5)
        result = detect_heartbeats(signal, FS)
        self.assertFalse(result.success)
        self.assertEqual(result.heartbeats.size, 0)
        self.assertEqual(result.windows, [])

    def test_outlier_pulse(self):
        signal, onsets = pulse_train()
        signal[490:510] += 8 * np.sin(np.pi * np.arange(20) / 20)
        result = detect_heartbeats(signal, FS)

        self.assertTrue(result.success)
        self.assertFalse(np.any((result.template_window >= 490) & (result.template_window < 510)))
        beats = np.asarray(result.heartbeats)
        found = sum(np.any(np.abs(beats - (onset + 2)) <= 3) for onset in onsets)
        self.assertGreaterEqual(found, 28)

    def test_lower_prominence_finds_more_peaks(self):
        signal, _ = pulse_train()
        signal = signal + 0.1 * np.random.default_rng(5).normal(size=signal.size)
        strict = detect_heartbeats(signal, FS, ncc_min_prominence=0.5)
        loose = detect_heartbeats(signal, FS, ncc_min_prominence=0.1)
        looser = detect_heartbeats(signal, FS, ncc_min_prominence=0.0)
        self.assertGreaterEqual(len(loose.heartbeats), len(strict.heartbeats))
        self.assertGreaterEqual(len(looser.heartbeats), len(loose.heartbeats))

    def test_chunk_without_fitting_candidates_is_skipped(self):
        signal, _ = pulse_train(n_beats=20)
        # First chunk: regular peaks, all too close to its start for a 0.2 s pre-window
        positions = list(range(2, 18, 2)) + list(range(1100, 2000, 100))
        result = detect_heartbeats(signal, FS, envelope_fn=spike_envelope(positions))

        first, second = result.windows
        self.assertEqual(first.n_peaks, 8)
        self.assertEqual(first.madnn, 0.0)
        self.assertEqual(first.n_candidates, 0)
        self.assertFalse(first.accepted)
        self.assertTrue(second.accepted)
        self.assertEqual(second.n_candidates, 9)
        self.assertTrue(result.success)
        self.assertGreaterEqual(result.template_window[0], 1000)

    def test_template_found_but_no_beats(self):
        signal, _ = pulse_train()
        result = detect_heartbeats(signal, FS, ncc_min_prominence=1.5)
        self.assertTrue(result.success)
        self.assertEqual(result.heartbeats.size, 0)
        self.assertEqual(result.template.size, 70)
        self.assertEqual(result.ncc_trace.size, signal.size)

    def test_custom_envelope(self):
        signal, _ = pulse_train()
        result = detect_heartbeats(signal, FS, envelope_fn=hilbert_envelope, envelope_min_prominence=0.4)
        self.assertTrue(result.success)
        self.assertEqual(result.template.size, 70)
        self.assertIs(result.params.envelope_fn, hilbert_envelope)

    def test_params_record_and_dict(self):
        signal, _ = pulse_train()
        result = detect_heartbeats(signal, FS, {'time_window_sec': 5, 'pre_sec': 0.15, 'post_sec': 0.7})
        self.assertEqual(result.params.time_window_sec, 5)
        self.assertEqual(result.params.ncc_min_distance_samples, 50)
        self.assertEqual(result.template.size, 15 + 70)
        self.assertEqual(result.windows[0].end - result.windows[0].start, 500)


if __name__ == '__main__':
    unittest.main()
