"""DSP determinism and feature edge cases."""

import numpy as np
import pytest

from whatwasthat.config import EngineConfig
from whatwasthat.errors import InvalidInput
from whatwasthat.features import (
    FEATURE_NAMES,
    N_FEATURES,
    as_records,
    band_energy,
    condition,
    fingerprint,
    frame_count,
    high_pass,
    magnitude_spectra,
    normalize,
    peak_frequency,
    spectra,
    spectral_contrast,
    spectral_flatness,
    spectral_flux,
    spectral_rolloff,
    zero_crossing_rate,
)

from .conftest import SR


def _column(fp, name):
    return fp[:, FEATURE_NAMES.index(name)]


def test_normalize_sets_peak_to_one():
    out = normalize(np.array([0.1, -0.4, 0.2]))
    assert np.abs(out).max() == 1.0
    assert out[1] == -1.0


@pytest.mark.parametrize("fixture", ["clap", "noise", "tone"])
def test_condition_peak_at_most_one(request, fixture):
    samples = request.getfixturevalue(fixture)
    out = condition(samples, SR)
    assert np.abs(out).max() <= 1.0 + 1e-12


def test_condition_leaves_silence_unchanged(silence):
    out = condition(silence, SR)
    assert np.array_equal(out, silence)
    assert out is not silence


def test_high_pass_matches_recurrence():
    rng = np.random.default_rng(3)
    x = rng.uniform(-1, 1, 200)
    rc = 1.0 / (2 * np.pi * 80.0)
    dt = 1.0 / SR
    alpha = rc / (rc + dt)
    expected = np.empty_like(x)
    expected[0] = x[0]
    for i in range(1, len(x)):
        expected[i] = alpha * (expected[i - 1] + x[i] - x[i - 1])
    np.testing.assert_allclose(high_pass(x, 80.0, SR), expected, rtol=1e-10, atol=1e-12)


def test_high_pass_removes_dc():
    out = high_pass(np.ones(SR), 80.0, SR)
    assert out[0] == 1.0
    assert abs(out[-1]) < 1e-6


@pytest.mark.parametrize("n_samples,expected", [
    (2048, 0),
    (2049, 1),
    (2048 + 512, 1),
    (2048 + 513, 2),
    (SR, 83),
])
def test_frame_count_requires_start_before_last_window(n_samples, expected):
    assert frame_count(n_samples, 2048, 512) == expected


def test_magnitude_spectra_matches_direct_sum():
    rng = np.random.default_rng(5)
    n = 64
    window = rng.uniform(-1, 1, n) * np.hanning(n)
    expected = []
    for k in range(n // 2):
        real = imag = 0.0
        for i in range(0, n, 2):
            angle = 2 * np.pi * k * i / n
            real += window[i] * np.cos(angle)
            imag -= window[i] * np.sin(angle)
        expected.append(np.sqrt(real * real + imag * imag) / (n / 2))
    got = magnitude_spectra(window[np.newaxis, :])[0]
    np.testing.assert_allclose(got, expected, rtol=1e-9, atol=1e-12)


def test_spectra_shapes(clap):
    windows, mags = spectra(clap, 2048, 512)
    assert windows.shape == (83, 2048)
    assert mags.shape == (83, 512)
    # Hann taper zeroes both ends of every window
    assert np.allclose(windows[:, 0], 0.0)
    assert np.allclose(windows[:, -1], 0.0)


def test_zero_crossing_rate_counts_sign_changes():
    assert zero_crossing_rate(np.array([1.0, -1.0, 1.0, -1.0])) == 0.75
    # zero counts as non-negative
    assert zero_crossing_rate(np.array([0.0, 0.0, -0.5, 0.0])) == 0.5
    assert zero_crossing_rate(np.zeros(8)) == 0.0


def test_spectral_flux_first_window_is_zero():
    spectrum = np.array([1.0, 2.0, 3.0])
    assert spectral_flux(spectrum, None) == 0.0
    assert spectral_flux(spectrum, np.array([1.0, 2.0, 1.0])) == pytest.approx(np.sqrt(4 / 3))


def test_spectral_rolloff():
    freqs = np.array([0.0, 100.0, 200.0, 300.0])
    assert spectral_rolloff(np.array([1.0, 1.0, 8.0, 0.0]), freqs, 400.0) == 200.0
    assert spectral_rolloff(np.zeros(4), freqs, 400.0) == 0.0


def test_spectral_flatness():
    assert spectral_flatness(np.ones(16)) == pytest.approx(1.0)
    assert spectral_flatness(np.zeros(16)) == 0.0
    # zero bins are ignored
    assert spectral_flatness(np.array([0.0, 2.0, 2.0])) == pytest.approx(1.0)
    assert spectral_flatness(np.array([1.0, 0.0, 0.0, 9.0])) == pytest.approx(0.6)


def test_spectral_contrast():
    spectrum = np.concatenate([np.full(10, 8.0), np.full(80, 4.0), np.full(10, 2.0)])
    assert spectral_contrast(spectrum) == pytest.approx(4.0)
    assert spectral_contrast(np.concatenate([np.ones(90), np.zeros(10)])) == 0.0
    assert spectral_contrast(np.ones(5)) == 0.0


def test_band_energy_uses_inclusive_divisor():
    spectrum = np.arange(8, dtype=float)
    # bins [2, 4) at 100 Hz per bin
    assert band_energy(spectrum, 200.0, 400.0, 800.0) == pytest.approx(np.sqrt((4 + 9) / 3))
    assert band_energy(spectrum, 0.0, 0.0, 800.0) == 0.0
    assert band_energy(spectrum, 900.0, 1200.0, 800.0) == 0.0


def test_peak_frequency_first_maximum_and_silent_range():
    spectrum = np.array([0.0, 3.0, 1.0, 3.0, 5.0, 5.0, 0.0, 0.0])
    assert peak_frequency(spectrum, 0.0, 400.0, 800.0) == 100.0
    assert peak_frequency(spectrum, 400.0, 800.0, 800.0) == 400.0
    assert peak_frequency(np.zeros(8), 200.0, 400.0, 800.0) == 200.0


def test_fingerprint_shape_and_determinism(clap):
    a = fingerprint(clap, SR)
    b = fingerprint(clap.copy(), SR)
    assert a.shape == (83, N_FEATURES)
    assert np.array_equal(a, b)
    assert np.isfinite(a).all()
    assert (a >= 0).all()
    assert not a.flags.writeable


def test_fingerprint_does_not_modify_input(clap):
    before = clap.copy()
    fingerprint(clap, SR)
    assert np.array_equal(clap, before)


def test_fingerprint_of_silence_collapses():
    fp = fingerprint(np.zeros(SR), SR)
    nyquist = SR / 2
    assert np.isfinite(fp).all()
    for name in FEATURE_NAMES:
        expected = nyquist / 4 if name == "peak_freq2" else 0.0
        assert np.all(_column(fp, name) == expected), name


def test_fingerprint_is_loudness_invariant(clap):
    np.testing.assert_allclose(fingerprint(clap, SR), fingerprint(clap * 0.01, SR), rtol=1e-9, atol=1e-12)


def test_tone_has_stable_peak(tone):
    fp = fingerprint(tone, SR)
    peaks = _column(fp, "peak_freq1")
    assert peaks[0] > 0
    assert np.all(peaks == peaks[0])


def test_first_frame_has_no_flux(clap):
    fp = fingerprint(clap, SR)
    flux = _column(fp, "spectral_flux")
    assert flux[0] == 0.0
    assert flux[1] > 0.0


def test_as_records_names_fields(clap):
    records = as_records(fingerprint(clap, SR))
    assert len(records) == 83
    assert records[0].spectral_flux == 0.0
    assert records[0]._fields == FEATURE_NAMES


def test_condition_switches_can_be_disabled():
    samples = np.full(4096, 0.25)
    config = EngineConfig(normalize=False, high_pass=False)
    assert np.array_equal(condition(samples, SR, config), samples)


@pytest.mark.parametrize("samples,sample_rate", [
    (np.array([]), SR),
    (np.zeros(2048), SR),
    (np.zeros(SR), 0),
    (np.zeros(SR), -8000),
    (np.zeros(SR), 44100.0),
    (np.zeros((SR, 2)), SR),
    (np.full(SR, np.nan), SR),
    (["a", "b"], SR),
])
def test_invalid_input(samples, sample_rate):
    with pytest.raises(InvalidInput):
        fingerprint(samples, sample_rate)
