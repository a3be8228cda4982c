# tests/test_water_quality_trends.py

"""Tests for the analysis script: loading, site metadata, and a full run."""

import logging

import numpy as np
import pandas as pd
import pytest

import water_quality_trends as wqt


def _fake_site_service(site_ids):
    """Stand-in for the NWIS site service; returns a duplicate row per site."""
    rows = []
    for i, site in enumerate(site_ids):
        for dup in range(2):
            rows.append({
                "agency_cd": "USGS",
                "site_no": site,
                "station_nm": f"SITE {site}" + (" DUP" if dup else ""),
                "drain_area_va": 100.0 + i,
                "alt_va": 1500.0 + i,
                "dec_lat_va": 39.0 + 0.1 * i,
                "dec_long_va": -108.0 - 0.1 * i,
            })
    return pd.DataFrame(rows)


@pytest.fixture
def config(tmp_path, raw_observations, raw_discharge):
    wq_file = tmp_path / "wq.csv"
    q_file = tmp_path / "q.csv"
    raw_observations.to_csv(wq_file, index=False)
    raw_discharge.to_csv(q_file, index=False)
    return wqt.AnalysisConfig(
        water_quality_file=wq_file,
        discharge_file=q_file,
        output_dir=tmp_path / "out",
        figure_dpi=50,
    )


class TestDataLoader:

    def test_load_water_quality(self, config, logger):
        wq = wqt.WaterQualityDataLoader(config, logger).load_water_quality()
        assert pd.api.types.is_datetime64_any_dtype(wq["date"])
        assert isinstance(wq["basin"].dtype, pd.CategoricalDtype)
        assert wq["site_no"].str.startswith("09").all()

    def test_cleaning(self, config, logger):
        raw = pd.DataFrame({
            "site_no": ["USGS-09010500", "09010500", "09010500", "09010500"],
            "date": ["2001-08-01", "2001-08-01", "not a date", "2001-09-01"],
            "basin": [" Upper", "Upper", "Upper", "Upper"],
            "parameter": ["Ca", "Ca", "Ca", "Ca "],
            "conc": ["1.5", "1.5", "2.0", "<0.1"],
        })
        wq = wqt.WaterQualityDataLoader(config, logger).clean_water_quality(raw)

        # prefix stripped then duplicate removed, bad date dropped
        assert len(wq) == 2
        assert set(wq["site_no"]) == {"09010500"}
        assert set(wq["parameter"]) == {"Ca"}
        # unparseable value kept as missing, never zero
        assert wq["conc"].isna().sum() == 1
        assert (wq["conc"].dropna() == 1.5).all()

    def test_missing_column(self, config, logger, tmp_path):
        bad = tmp_path / "bad.csv"
        pd.DataFrame({"site_no": ["1"], "date": ["2001-01-01"]}).to_csv(bad, index=False)
        config.water_quality_file = bad
        with pytest.raises(ValueError, match="missing required"):
            wqt.WaterQualityDataLoader(config, logger).load_water_quality()

    def test_join_discharge_is_inner(self, config, logger):
        loader = wqt.WaterQualityDataLoader(config, logger)
        wq = pd.DataFrame({
            "site_no": ["A", "A", "B"],
            "date": pd.to_datetime(["2001-08-01", "2001-08-02", "2001-08-01"]),
            "conc": [1.0, 2.0, 3.0],
        })
        q = pd.DataFrame({
            "site_no": ["A", "A", "C"],
            "date": pd.to_datetime(["2001-08-01", "2001-08-01", "2001-08-01"]),
            "q": [10.0, 99.0, 5.0],
        })
        joined = loader.join_discharge(wq, q)
        assert len(joined) == 1
        assert joined.iloc[0]["q"] == 10.0


class TestSiteMetadataJoiner:

    def test_fetch_deduplicates_keeping_first(self, config, logger):
        joiner = wqt.SiteMetadataJoiner(config, logger, fetcher=_fake_site_service)
        info = joiner.fetch_site_info(["09010500", "09163500", "09010500"])

        assert info["site_no"].tolist() == ["09010500", "09163500"]
        assert info["site_name"].tolist() == ["SITE 09010500", "SITE 09163500"]
        assert list(info.columns) == ["site_no", "site_name", "drainage_area",
                                      "elevation", "latitude", "longitude"]

    def test_fetch_handles_site_index(self, config, logger):
        joiner = wqt.SiteMetadataJoiner(config, logger,
                                        fetcher=lambda ids: _fake_site_service(ids).set_index("site_no"))
        info = joiner.fetch_site_info(["09010500"])
        assert info["site_no"].tolist() == ["09010500"]

    def test_missing_attributes_filled(self, config, logger):
        joiner = wqt.SiteMetadataJoiner(
            config, logger,
            fetcher=lambda ids: pd.DataFrame({"site_no": ids, "station_nm": ["X"] * len(ids)}),
        )
        info = joiner.fetch_site_info(["1"])
        assert np.isnan(info.loc[0, "drainage_area"])

    def test_empty_site_list_skips_service(self, config, logger):
        def fail(ids):
            raise AssertionError("service should not be called")

        info = wqt.SiteMetadataJoiner(config, logger, fetcher=fail).fetch_site_info([])
        assert info.empty

    def test_join_keeps_every_row(self, config, logger):
        joiner = wqt.SiteMetadataJoiner(config, logger, fetcher=_fake_site_service)
        wq = pd.DataFrame({"site_no": ["09010500", "09010500", "99999999"], "conc": [1.0, 2.0, 3.0]})
        info = joiner.fetch_site_info(["09010500"])
        joined = joiner.join(wq, info)

        assert len(joined) == 3
        assert joined["latitude"].notna().tolist() == [True, True, False]


class TestTrendAnalysis:

    def test_basin_trends(self, config, logger, raw_observations):
        loader = wqt.WaterQualityDataLoader(config, logger)
        wq = loader.clean_water_quality(raw_observations)
        trends = wqt.TrendAnalysis(config, logger).run_trends(wq)

        annual = trends["annual"]
        assert set(annual["year"]) == set(range(2000, 2010))
        # four low-flow samples per site and year
        assert (annual["n_samples"] == 4).all()

        series = trends["series"]
        assert not series.duplicated(subset=["basin", "parameter", "year"]).any()

        mk = trends["mann_kendall"].summary.set_index(["basin", "parameter"])
        assert len(mk) == 4
        assert mk.loc[("Upper", "Ca"), "slope"] == pytest.approx(0.5, abs=0.05)
        assert mk.loc[("Upper", "Ca"), "trend_flag"]

        linear = trends["linear"].summary.set_index(["basin", "parameter"])
        assert linear.loc[("Upper", "Ca"), "slope"] == pytest.approx(0.5, abs=0.05)


class TestMain:

    def test_full_run(self, config):
        results = wqt.main(config, site_fetcher=_fake_site_service)
        out = config.output_dir

        for name in ["analysis.log", "analysis_report.txt", "mann_kendall_trends.csv",
                     "linear_trends.csv", "discharge_regression.csv", "dropped_groups.csv",
                     "annual_low_flow_medians.csv", "eda_sites_per_basin.csv"]:
            assert (out / name).exists(), name

        for plot in ["site_map", "annual_series", "trend_summary", "concentration_discharge"]:
            assert (out / "plots" / f"{plot}.png").exists(), plot

        report = (out / "analysis_report.txt").read_text()
        assert "MANN-KENDALL" in report
        assert "Upper, Ca" in report

        regression = results["regression"].summary
        assert len(regression) == 8  # 2 basins x 2 parameters x 2 sites
        assert "estimate" in regression.columns

        eda = results["eda"]["sites_per_basin"].set_index("basin")
        assert eda.loc["Upper", "n_sites"] == 2

    def test_without_site_metadata(self, config):
        config.fetch_site_metadata = False
        wqt.main(config)
        assert not (config.output_dir / "plots" / "site_map.png").exists()
        assert (config.output_dir / "plots" / "trend_summary.png").exists()

    def test_missing_input_raises(self, config, tmp_path):
        config.water_quality_file = tmp_path / "nope.csv"
        with pytest.raises(FileNotFoundError):
            wqt.main(config, site_fetcher=_fake_site_service)


class TestLogging:

    def test_core_logger_still_propagates(self, tmp_path):
        wqt.setup_logging(tmp_path / "logs")
        core = logging.getLogger("trend_analysis")
        assert core.propagate
        assert (tmp_path / "logs" / "analysis.log").exists()
