import numpy as np
import pytest

from elmtrend.trend import build_design_matrix, fit_trend


def test_declining_battery_slope():
    fit = fit_trend([12.6, 12.5, 12.4, 12.3, 12.2])
    assert fit.slope == pytest.approx(-0.1)
    assert fit.intercept == pytest.approx(12.6)
    assert fit.predict(5) == pytest.approx(12.1)
    assert fit.samples == 5


def test_noisy_series_matches_polyfit():
    rng = np.random.default_rng(7)
    values = 0.3 + 0.004 * np.arange(40) + rng.normal(scale=0.01, size=40)
    fit = fit_trend(values)
    slope, intercept = np.polyfit(np.arange(40), values, 1)
    assert fit.slope == pytest.approx(slope)
    assert fit.intercept == pytest.approx(intercept)


def test_short_series_is_flat():
    assert fit_trend([]).as_dict() == {"slope": 0.0, "intercept": 0.0, "samples": 0}
    single = fit_trend([12.4])
    assert single.slope == 0.0
    assert single.intercept == 12.4


def test_design_matrix():
    X = build_design_matrix(3)
    assert X.shape == (3, 2)
    assert X[:, 1].tolist() == [0.0, 1.0, 2.0]
