"""Feature extraction pipeline: PCM samples → per-window feature fingerprint."""

from functools import lru_cache
from pathlib import Path
from typing import NamedTuple

import numpy as np
import scipy.io.wavfile
import scipy.signal

from .config import (
    BANDS,
    CONTRAST_FRACTION,
    MAX_BINS,
    ROLLOFF_FRACTION,
    EngineConfig,
)
from .errors import InvalidInput


class FeatureVector(NamedTuple):
    """Descriptors of one analysis window. Field order is the fingerprint column order."""

    energy: float
    zero_crossing_rate: float
    spectral_centroid: float
    spectral_flux: float
    spectral_rolloff: float
    spectral_flatness: float
    spectral_contrast: float
    sub_bass: float
    bass: float
    low_mid: float
    mid: float
    high_mid: float
    upper_mid: float
    presence: float
    brilliance: float
    peak_freq1: float
    peak_freq2: float


FEATURE_NAMES = FeatureVector._fields
N_FEATURES = len(FEATURE_NAMES)


# ---------------------------------------------------------------------------
# Step 1: Audio input
# ---------------------------------------------------------------------------

def load_wav(path: str | Path) -> tuple[np.ndarray, int]:
    """
    Read a WAV file into mono float64 samples in [-1, 1].
    Integer PCM is scaled by its full range; multi-channel audio is averaged.
    """
    sample_rate, data = scipy.io.wavfile.read(path)
    if data.dtype == np.uint8:
        audio = (data.astype(np.float64) - 128.0) / 128.0
    elif np.issubdtype(data.dtype, np.integer):
        audio = data.astype(np.float64) / float(-np.iinfo(data.dtype).min)
    else:
        audio = data.astype(np.float64)
    if audio.ndim == 2:
        audio = audio.mean(axis=1)
    return audio, int(sample_rate)


def validate_samples(samples, sample_rate) -> np.ndarray:
    """Check a raw buffer and return it as a 1D float64 array."""
    if isinstance(sample_rate, bool) or not isinstance(sample_rate, (int, np.integer)):
        raise InvalidInput(f"sample rate must be an integer, got {sample_rate!r}")
    if sample_rate <= 0:
        raise InvalidInput(f"sample rate must be positive, got {sample_rate}")
    try:
        audio = np.asarray(samples, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"samples are not numeric: {e}") from e
    if audio.ndim != 1:
        raise InvalidInput(f"expected single-channel samples, got shape {audio.shape}")
    if audio.size == 0:
        raise InvalidInput("sample buffer is empty")
    if not np.isfinite(audio).all():
        raise InvalidInput("sample buffer contains NaN or infinite values")
    return audio


# ---------------------------------------------------------------------------
# Step 2: Signal conditioning
# ---------------------------------------------------------------------------

def normalize(samples: np.ndarray) -> np.ndarray:
    """Peak normalize to exactly 1.0. An all-zero buffer comes back unchanged."""
    peak = np.abs(samples).max() if len(samples) else 0.0
    if peak == 0:
        return samples.copy()
    return samples / peak


def high_pass(samples: np.ndarray, cutoff: float, sample_rate: int) -> np.ndarray:
    """
    Single-pole RC high-pass filter:
        y[0] = x[0]
        y[i] = alpha * (y[i-1] + x[i] - x[i-1]),  alpha = RC / (RC + dt)
    """
    if len(samples) == 0:
        return samples.copy()
    rc = 1.0 / (2.0 * np.pi * cutoff)
    dt = 1.0 / sample_rate
    alpha = rc / (rc + dt)
    # Initial state chosen so the first output equals the first input.
    zi = np.array([(1.0 - alpha) * samples[0]])
    filtered, _ = scipy.signal.lfilter([alpha, -alpha], [1.0, -alpha], samples, zi=zi)
    return filtered


def condition(samples: np.ndarray, sample_rate: int, config: EngineConfig | None = None) -> np.ndarray:
    """
    Normalize amplitude, then strip low-frequency rumble. Returns a new array.
    The filter can overshoot on sharp transients; if it does, the output is
    scaled back so the peak stays at 1.0.
    """
    config = config or EngineConfig()
    audio = np.array(samples, dtype=np.float64)
    if config.normalize:
        audio = normalize(audio)
    if config.high_pass:
        audio = high_pass(audio, config.high_pass_cutoff, sample_rate)
        if config.normalize:
            peak = np.abs(audio).max()
            if peak > 1.0:
                audio = audio / peak
    return audio


# ---------------------------------------------------------------------------
# Step 3: Windowed magnitude spectra
# ---------------------------------------------------------------------------

def n_bins(window_size: int) -> int:
    return min(MAX_BINS, window_size // 2)


@lru_cache(maxsize=8)
def _dft_basis(window_size: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Cosine and sine basis for the truncated DFT, evaluated on every other
    sample of the window. Shapes: [n_samples/2 × n_bins].
    """
    n = np.arange(0, window_size, 2, dtype=np.float64)
    k = np.arange(n_bins(window_size), dtype=np.float64)
    angle = np.outer(n, 2.0 * np.pi * k / window_size)
    cos, sin = np.cos(angle), np.sin(angle)
    cos.flags.writeable = False
    sin.flags.writeable = False
    return cos, sin


def frame_count(n_samples: int, window_size: int, hop_size: int) -> int:
    """Number of windows starting at multiples of hop_size with start < n_samples - window_size."""
    span = n_samples - window_size
    if span <= 0:
        return 0
    return (span + hop_size - 1) // hop_size


def frames(samples: np.ndarray, window_size: int, hop_size: int) -> np.ndarray:
    """Slice the signal into Hann-tapered windows. Returns [T × window_size]."""
    n_frames = frame_count(len(samples), window_size, hop_size)
    if n_frames == 0:
        return np.empty((0, window_size), dtype=np.float64)
    audio = np.ascontiguousarray(samples, dtype=np.float64)
    framed = np.lib.stride_tricks.as_strided(
        audio,
        shape=(n_frames, window_size),
        strides=(audio.strides[0] * hop_size, audio.strides[0]),
    ).copy()
    framed *= np.hanning(window_size)
    return framed


def magnitude_spectra(windows: np.ndarray) -> np.ndarray:
    """
    Magnitude spectrum of each (already tapered) window, truncated to
    min(MAX_BINS, N/2) bins and scaled by N/2. Returns [T × n_bins].
    """
    window_size = windows.shape[1]
    cos, sin = _dft_basis(window_size)
    decimated = windows[:, ::2]
    real = decimated @ cos
    imag = -(decimated @ sin)
    return np.sqrt(real ** 2 + imag ** 2) / (window_size / 2)


def spectra(
    samples: np.ndarray,
    window_size: int = 2048,
    hop_size: int = 512,
) -> tuple[np.ndarray, np.ndarray]:
    """Tapered windows and their magnitude spectra, in window order."""
    windows = frames(samples, window_size, hop_size)
    if len(windows) == 0:
        return windows, np.empty((0, n_bins(window_size)), dtype=np.float64)
    return windows, magnitude_spectra(windows)


# ---------------------------------------------------------------------------
# Step 4: Per-window descriptors
# ---------------------------------------------------------------------------

def _bin_frequencies(n: int, nyquist: float) -> np.ndarray:
    return np.arange(n, dtype=np.float64) / n * nyquist


def _bin_range(low_hz: float, high_hz: float, n: int, nyquist: float) -> tuple[int, int]:
    low = int(np.floor(low_hz / nyquist * n))
    high = int(np.ceil(high_hz / nyquist * n))
    return max(0, low), min(high, n)


def zero_crossing_rate(window: np.ndarray) -> float:
    negative = window < 0
    crossings = np.count_nonzero(negative[1:] != negative[:-1])
    return crossings / len(window)


def spectral_centroid(spectrum: np.ndarray, freqs: np.ndarray) -> float:
    total = spectrum.sum()
    if total <= 0:
        return 0.0
    return float((freqs * spectrum).sum() / total)


def spectral_flux(spectrum: np.ndarray, prev_spectrum: np.ndarray | None) -> float:
    if prev_spectrum is None:
        return 0.0
    n = min(len(spectrum), len(prev_spectrum))
    if n == 0:
        return 0.0
    diff = spectrum[:n] - prev_spectrum[:n]
    return float(np.sqrt(np.mean(diff ** 2)))


def spectral_rolloff(spectrum: np.ndarray, freqs: np.ndarray, nyquist: float) -> float:
    threshold = ROLLOFF_FRACTION * spectrum.sum()
    reached = np.cumsum(spectrum) >= threshold
    if not reached.any():
        return float(nyquist)
    return float(freqs[np.argmax(reached)])


def spectral_flatness(spectrum: np.ndarray) -> float:
    """Wiener entropy over the strictly positive bins."""
    positive = spectrum[spectrum > 0]
    if len(positive) == 0:
        return 0.0
    arithmetic = positive.mean()
    if arithmetic <= 0:
        return 0.0
    geometric = np.exp(np.log(positive).mean())
    return float(geometric / arithmetic)


def spectral_contrast(spectrum: np.ndarray) -> float:
    """Mean of the loudest 10% of bins over the mean of the quietest 10%."""
    n = int(len(spectrum) * CONTRAST_FRACTION)
    if n == 0:
        return 0.0
    ordered = np.sort(spectrum)[::-1]
    valley = ordered[-n:].mean()
    if valley <= 0:
        return 0.0
    return float(ordered[:n].mean() / valley)


def band_energy(spectrum: np.ndarray, low_hz: float, high_hz: float, nyquist: float) -> float:
    start, end = _bin_range(low_hz, high_hz, len(spectrum), nyquist)
    if start >= end:
        return 0.0
    # Divisor includes the end bin, matching the stored reference fingerprints.
    return float(np.sqrt((spectrum[start:end] ** 2).sum() / (end - start + 1)))


def peak_frequency(spectrum: np.ndarray, low_hz: float, high_hz: float, nyquist: float) -> float:
    """Frequency of the first loudest bin in [low_hz, high_hz); the lower edge if the range is silent."""
    n = len(spectrum)
    start, end = _bin_range(low_hz, high_hz, n, nyquist)
    peak = start
    if start < end:
        segment = spectrum[start:end]
        if segment.max() > 0:
            peak = start + int(np.argmax(segment))
    return peak / n * nyquist


def extract_frame(
    window: np.ndarray,
    spectrum: np.ndarray,
    prev_spectrum: np.ndarray | None,
    sample_rate: int,
) -> FeatureVector:
    """Compute the descriptor record for one tapered window and its spectrum."""
    nyquist = sample_rate / 2
    freqs = _bin_frequencies(len(spectrum), nyquist)
    bands = {
        name: band_energy(spectrum, low, high, nyquist)
        for name, low, high in BANDS
    }
    return FeatureVector(
        energy=float(np.sqrt(np.mean(window ** 2))),
        zero_crossing_rate=zero_crossing_rate(window),
        spectral_centroid=spectral_centroid(spectrum, freqs),
        spectral_flux=spectral_flux(spectrum, prev_spectrum),
        spectral_rolloff=spectral_rolloff(spectrum, freqs, nyquist),
        spectral_flatness=spectral_flatness(spectrum),
        spectral_contrast=spectral_contrast(spectrum),
        peak_freq1=peak_frequency(spectrum, 0.0, nyquist / 4, nyquist),
        peak_freq2=peak_frequency(spectrum, nyquist / 4, nyquist / 2, nyquist),
        **bands,
    )


# ---------------------------------------------------------------------------
# Convenience: full pipeline for one buffer
# ---------------------------------------------------------------------------

def fingerprint(samples, sample_rate: int, config: EngineConfig | None = None) -> np.ndarray:
    """
    Full pipeline: raw samples → [T × N_FEATURES] float64 fingerprint,
    one row per analysis window in chronological order.
    Raises InvalidInput if the buffer is unusable or shorter than one window.
    """
    config = config or EngineConfig()
    audio = validate_samples(samples, sample_rate)
    if frame_count(len(audio), config.window_size, config.hop_size) == 0:
        raise InvalidInput(
            f"need more than {config.window_size} samples for one analysis window, "
            f"got {len(audio)}"
        )
    audio = condition(audio, sample_rate, config)
    windows, mags = spectra(audio, config.window_size, config.hop_size)

    rows = []
    prev = None
    for window, spectrum in zip(windows, mags):
        rows.append(extract_frame(window, spectrum, prev, sample_rate))
        prev = spectrum
    fp = np.array(rows, dtype=np.float64)
    fp.flags.writeable = False
    return fp


def as_records(fp: np.ndarray) -> list[FeatureVector]:
    """Fingerprint rows as FeatureVector records."""
    return [FeatureVector(*map(float, row)) for row in fp]
