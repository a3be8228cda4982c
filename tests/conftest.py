# tests/conftest.py

import logging
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture
def logger():
    return logging.getLogger("water_quality_trends.tests")


@pytest.fixture
def three_group_series():
    """Increasing, decreasing and flat annual series for 2001-2005."""
    years = list(range(2001, 2006))
    rows = []
    for basin, values in [("Alpha", [1, 2, 3, 4, 5]),
                          ("Beta", [5, 4, 3, 2, 1]),
                          ("Gamma", [3, 3, 3, 3, 3])]:
        for year, value in zip(years, values):
            rows.append({"basin": basin, "parameter": "Ca", "year": year, "conc": float(value)})
    return pd.DataFrame(rows)


@pytest.fixture
def raw_observations():
    """Samples in every month of 2000-2009 for two basins, two parameters, two sites each."""
    rng = np.random.default_rng(0)
    rows = []
    sites = {"Upper": ["09010500", "09014050"], "Lower": ["09163500", "09180500"]}
    for basin, basin_sites in sites.items():
        for site in basin_sites:
            for parameter in ["Ca", "Mg"]:
                for year in range(2000, 2010):
                    for month in range(1, 13):
                        if basin == "Upper" and parameter == "Ca":
                            conc = 10 + 0.5 * (year - 2000) + rng.normal(0, 0.05)
                        else:
                            conc = 20 + rng.normal(0, 1)
                        rows.append({
                            "site_no": site,
                            "date": f"{year}-{month:02d}-15",
                            "basin": basin,
                            "parameter": parameter,
                            "conc": conc,
                        })
    return pd.DataFrame(rows)


@pytest.fixture
def raw_discharge(raw_observations):
    rng = np.random.default_rng(1)
    q = raw_observations[["site_no", "date"]].drop_duplicates().reset_index(drop=True)
    q["q"] = rng.uniform(5, 500, len(q))
    return q
