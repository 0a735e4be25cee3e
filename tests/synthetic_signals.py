import numpy as np

FS = 100


def scg_pulse(fs: float = FS, duration: float = 0.3, freq: float = 10.0, decay: float = 0.05) -> np.ndarray:
    """Damped sinusoid resembling a single seismocardiogram complex."""
    t = np.arange(int(round(duration * fs))) / fs
    return np.sin(2 * np.pi * freq * t) * np.exp(-t / decay)


def pulse_train(n_beats: int = 30, period: int = 100, offset: int = 30, fs: float = FS):
    """Returns (signal, onsets) for n_beats identical pulses, one every `period` samples."""
    pulse = scg_pulse(fs)
    onsets = offset + period * np.arange(n_beats)
    signal = np.zeros(n_beats * period)
    for onset in onsets:
        signal[onset: onset + pulse.size] += pulse
    return signal, onsets
