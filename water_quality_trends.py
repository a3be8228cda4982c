#!/usr/bin/env python3
"""
Water Quality Trend Analysis
============================
Exploratory time-series and regression analysis of tidied water quality and
discharge monitoring data.

This script performs:
- Loading and cleaning of water quality and discharge tables
- Site metadata retrieval from USGS NWIS and joining by site
- Exploratory summaries of spatial and temporal coverage
- Annual low-flow medians per basin, parameter and year
- Trend detection per basin/parameter: OLS (baseline) vs Mann-Kendall/Sen's slope
- Concentration vs discharge regression per basin/parameter/site
- Visualization generation and export of results

License: MIT
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import dataretrieval.nwis as nwis
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

import trend_analysis as ta

# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class AnalysisConfig:
    """Configuration settings for the water quality trend analysis."""

    # File paths
    water_quality_file: Path = Path("data/tidy_water_quality.csv")
    discharge_file: Path = Path("data/tidy_discharge.csv")
    output_dir: Path = Path("wq_trends_output")

    # Column names of the tidied tables
    site_col: str = "site_no"
    date_col: str = "date"
    basin_col: str = "basin"
    parameter_col: str = "parameter"
    value_col: str = "conc"
    flow_col: str = "q"

    # Aggregation settings
    low_flow_months: tuple = (8, 9, 10, 11)  # Aug-Nov
    aggregation_stat: str = "median"

    # Trend settings
    trend_group_keys: tuple = ("basin", "parameter")
    regression_group_keys: tuple = ("basin", "parameter", "site_no")
    trend_significance_level: float = 0.01
    regression_significance_level: float = 0.05
    min_observations_for_trend: int = 2
    min_observations_for_regression: int = 3
    n_jobs: int = 1

    # Site metadata
    fetch_site_metadata: bool = True

    # Plotting settings
    figure_dpi: int = 150
    figure_format: str = "png"
    color_palette: str = "viridis"


# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(output_dir: Path) -> logging.Logger:
    """Configure logging to both file and console."""
    output_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("water_quality_trends")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    # File handler - detailed logging
    fh = logging.FileHandler(output_dir / "analysis.log", mode='w')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    # Console handler - info and above
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter('%(levelname)-8s | %(message)s'))

    logger.addHandler(fh)
    logger.addHandler(ch)

    # Route the core module's messages through the same handlers
    core_logger = logging.getLogger(ta.__name__)
    core_logger.setLevel(logging.DEBUG)
    core_logger.handlers.clear()
    core_logger.addHandler(fh)
    core_logger.addHandler(ch)

    return logger


# =============================================================================
# DATA LOADING AND CLEANING
# =============================================================================

class WaterQualityDataLoader:
    """Loads the tidied water quality and discharge tables."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def load_water_quality(self) -> pd.DataFrame:
        """Load and clean the water quality observations."""
        df = self._read(self.config.water_quality_file)
        self._require_columns(df, [self.config.site_col, self.config.date_col, self.config.basin_col,
                                   self.config.parameter_col, self.config.value_col])
        return self.clean_water_quality(df)

    def load_discharge(self) -> pd.DataFrame:
        """Load and clean the discharge observations."""
        df = self._read(self.config.discharge_file)
        self._require_columns(df, [self.config.site_col, self.config.date_col, self.config.flow_col])
        return self.clean_discharge(df)

    def _read(self, path: Path) -> pd.DataFrame:
        self.logger.info(f"Loading data from {path}")
        df = pd.read_csv(
            path,
            dtype={self.config.site_col: 'str'},
            na_values=['None', 'NA', 'N/A', '', 'null', 'NULL'],
        )
        self.logger.info(f"Loaded {len(df):,} records with {len(df.columns)} columns")
        return df

    def _require_columns(self, df: pd.DataFrame, columns: list[str]) -> None:
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise ValueError(f"Input is missing required column(s): {missing}")

    def clean_water_quality(self, df: pd.DataFrame) -> pd.DataFrame:
        """Clean and preprocess the water quality table."""
        self.logger.info("Cleaning water quality data...")
        initial_rows = len(df)
        cfg = self.config

        df = self._clean_common(df)
        df[cfg.value_col] = pd.to_numeric(df[cfg.value_col], errors='coerce')
        df[cfg.parameter_col] = df[cfg.parameter_col].astype(str).str.strip()
        df[cfg.basin_col] = df[cfg.basin_col].astype(str).str.strip().astype('category')
        df = df.drop_duplicates().reset_index(drop=True)

        n_missing = int(df[cfg.value_col].isna().sum())
        if n_missing > 0:
            self.logger.warning(f"Found {n_missing:,} records with missing {cfg.value_col} "
                                "(excluded from aggregation, not imputed)")

        self.logger.info(f"Cleaning complete: {initial_rows:,} → {len(df):,} records")
        return df

    def clean_discharge(self, df: pd.DataFrame) -> pd.DataFrame:
        """Clean and preprocess the discharge table."""
        self.logger.info("Cleaning discharge data...")
        initial_rows = len(df)

        df = self._clean_common(df)
        df[self.config.flow_col] = pd.to_numeric(df[self.config.flow_col], errors='coerce')
        df = df.drop_duplicates().reset_index(drop=True)

        self.logger.info(f"Cleaning complete: {initial_rows:,} → {len(df):,} records")
        return df

    def _clean_common(self, df: pd.DataFrame) -> pd.DataFrame:
        df = df.copy()
        site = self.config.site_col
        date = self.config.date_col

        df[site] = df[site].astype(str).str.strip().str.replace(r'^USGS-', '', regex=True)
        df[date] = pd.to_datetime(df[date], errors='coerce')

        bad_dates = df[date].isna()
        if bad_dates.any():
            self.logger.warning(f"Dropping {int(bad_dates.sum()):,} records with unparseable dates")
            df = df[~bad_dates]
        return df

    def join_discharge(self, wq: pd.DataFrame, q: pd.DataFrame) -> pd.DataFrame:
        """
        Inner join of water quality and daily discharge on site and date.

        Samples without same-day discharge, and discharge days without a
        sample, are excluded. This is expected and only reported.
        """
        keys = [self.config.site_col, self.config.date_col]
        q_daily = q.dropna(subset=[self.config.flow_col]).drop_duplicates(subset=keys, keep='first')
        joined = wq.merge(q_daily[keys + [self.config.flow_col]], on=keys, how='inner')

        n_unmatched = len(wq) - len(joined)
        self.logger.info(f"Joined discharge: {len(joined):,} of {len(wq):,} samples matched "
                         f"({n_unmatched:,} without same-day discharge excluded)")
        return joined


# =============================================================================
# SITE METADATA
# =============================================================================

SITE_INFO_COLUMNS = {
    'site_no': 'site_no',
    'station_nm': 'site_name',
    'drain_area_va': 'drainage_area',
    'alt_va': 'elevation',
    'dec_lat_va': 'latitude',
    'dec_long_va': 'longitude',
}


def _nwis_get_info(site_ids: list[str]) -> pd.DataFrame:
    df, _ = nwis.get_info(sites=site_ids)
    return df


class SiteMetadataJoiner:
    """Fetches site attributes from the USGS site service and joins them by site."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger,
                 fetcher: Optional[Callable[[list[str]], pd.DataFrame]] = None):
        self.config = config
        self.logger = logger
        self.fetcher = fetcher or _nwis_get_info

    def fetch_site_info(self, site_ids: Iterable[str]) -> pd.DataFrame:
        """Return one row per site with name, drainage area, elevation and coordinates."""
        site_ids = sorted({str(s) for s in site_ids})
        self.logger.info(f"Fetching site metadata for {len(site_ids):,} sites")
        if not site_ids:
            return pd.DataFrame(columns=list(SITE_INFO_COLUMNS.values()))

        raw = self.fetcher(site_ids)
        raw = raw.reset_index() if 'site_no' not in raw.columns else raw
        available = [c for c in SITE_INFO_COLUMNS if c in raw.columns]
        info = raw[available].rename(columns=SITE_INFO_COLUMNS).copy()
        for col in SITE_INFO_COLUMNS.values():
            if col not in info.columns:
                info[col] = np.nan

        info['site_no'] = info['site_no'].astype(str)
        n_before = len(info)
        info = info.drop_duplicates(subset='site_no', keep='first').reset_index(drop=True)
        if len(info) < n_before:
            self.logger.debug(f"  Removed {n_before - len(info):,} duplicate site rows")

        missing = set(site_ids) - set(info['site_no'])
        if missing:
            self.logger.warning(f"  No metadata returned for {len(missing):,} sites")
        return info[list(SITE_INFO_COLUMNS.values())]

    def join(self, df: pd.DataFrame, site_info: pd.DataFrame) -> pd.DataFrame:
        """Left join site attributes onto ``df`` by site."""
        site = self.config.site_col
        info = site_info.rename(columns={'site_no': site})
        return df.merge(info, on=site, how='left')


# =============================================================================
# EXPLORATORY ANALYSIS
# =============================================================================

class ExploratoryAnalysis:
    """Summaries of spatial and temporal coverage."""

    def __init__(self, df: pd.DataFrame, config: AnalysisConfig, logger: logging.Logger):
        self.df = df
        self.config = config
        self.logger = logger

    def run_full_eda(self) -> dict[str, pd.DataFrame]:
        self.logger.info("=" * 60)
        self.logger.info("EXPLORATORY DATA ANALYSIS")
        self.logger.info("=" * 60)

        return {
            'sites_per_basin': self._sites_per_basin(),
            'parameter_counts': self._parameter_counts(),
            'year_coverage': self._year_coverage(),
            'low_flow_counts': self._low_flow_counts(),
        }

    def _sites_per_basin(self) -> pd.DataFrame:
        cfg = self.config
        out = (self.df.groupby(cfg.basin_col, observed=True)
               .agg(n_sites=(cfg.site_col, 'nunique'), n_samples=(cfg.value_col, 'count'))
               .reset_index())
        for _, row in out.iterrows():
            self.logger.info(f"  {row[cfg.basin_col]}: {row['n_sites']} sites, {row['n_samples']:,} samples")
        return out

    def _parameter_counts(self) -> pd.DataFrame:
        cfg = self.config
        return (self.df.groupby([cfg.basin_col, cfg.parameter_col], observed=True)[cfg.value_col]
                .agg(['count', 'median', 'min', 'max'])
                .reset_index())

    def _year_coverage(self) -> pd.DataFrame:
        cfg = self.config
        years = self.df[cfg.date_col].dt.year
        out = (self.df.assign(year=years)
               .groupby(cfg.basin_col, observed=True)['year']
               .agg(first_year='min', last_year='max', n_years='nunique')
               .reset_index())
        return out

    def _low_flow_counts(self) -> pd.DataFrame:
        cfg = self.config
        low_flow = ta.filter_months(self.df, cfg.low_flow_months, date_col=cfg.date_col)
        self.logger.info(f"  {len(low_flow):,} of {len(self.df):,} samples fall in low-flow months "
                         f"{list(cfg.low_flow_months)}")
        return (low_flow.groupby([cfg.basin_col, cfg.parameter_col], observed=True)[cfg.value_col]
                .count()
                .rename('n_low_flow')
                .reset_index())


# =============================================================================
# TREND ANALYSIS
# =============================================================================

class TrendAnalysis:
    """Runs the grouped trend and regression models."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def annual_low_flow_medians(self, wq: pd.DataFrame) -> pd.DataFrame:
        """One aggregated value per basin, parameter, site and year."""
        cfg = self.config
        keys = list(dict.fromkeys([*cfg.trend_group_keys, cfg.site_col]))
        return ta.aggregate_by_period(
            wq, keys,
            value_col=cfg.value_col,
            date_col=cfg.date_col,
            months=cfg.low_flow_months,
            stat=cfg.aggregation_stat,
        )

    def basin_series(self, annual: pd.DataFrame) -> pd.DataFrame:
        """Collapse site-year values to one value per trend group and year."""
        cfg = self.config
        keys = list(cfg.trend_group_keys) + ['year']
        aggs = {cfg.value_col: (cfg.value_col, cfg.aggregation_stat)}
        if cfg.site_col not in keys:
            aggs['n_sites'] = (cfg.site_col, 'nunique')
        return annual.groupby(keys, observed=True).agg(**aggs).reset_index()

    def run_trends(self, wq: pd.DataFrame) -> dict[str, Any]:
        self.logger.info("=" * 60)
        self.logger.info("TREND ANALYSIS")
        self.logger.info("=" * 60)
        cfg = self.config

        annual = self.annual_low_flow_medians(wq)
        series = self.basin_series(annual)

        self.logger.info("Linear regression (baseline, assumes independence)...")
        linear = ta.run_grouped_model(
            series, cfg.trend_group_keys,
            ta.linear_trend_model(cfg.value_col, 'year'),
            alpha=cfg.trend_significance_level,
            min_observations=max(3, cfg.min_observations_for_trend),
            n_jobs=cfg.n_jobs,
        )

        self.logger.info("Mann-Kendall / Sen's slope...")
        mk = ta.run_grouped_model(
            series, cfg.trend_group_keys,
            ta.mann_kendall_model(cfg.value_col, 'year'),
            alpha=cfg.trend_significance_level,
            min_observations=cfg.min_observations_for_trend,
            n_jobs=cfg.n_jobs,
        )

        for _, row in mk.summary[mk.summary['trend_flag']].iterrows():
            direction = 'increasing' if row['slope'] > 0 else 'decreasing'
            label = ', '.join(str(row[k]) for k in cfg.trend_group_keys)
            self.logger.info(f"  {label}: {direction} ({row['slope']:+.4g}/yr, p={row['p_value']:.4f})")

        return {
            'annual': annual,
            'series': series,
            'linear': linear,
            'mann_kendall': mk,
        }

    def run_discharge_regression(self, joined: pd.DataFrame) -> ta.GroupedResult:
        """Concentration against same-day discharge, per basin, parameter and site."""
        self.logger.info("=" * 60)
        self.logger.info("CONCENTRATION VS DISCHARGE")
        self.logger.info("=" * 60)
        cfg = self.config

        data = joined.dropna(subset=[cfg.value_col, cfg.flow_col])
        return ta.run_grouped_model(
            data, cfg.regression_group_keys,
            ta.covariate_regression_model(cfg.value_col, cfg.flow_col),
            alpha=cfg.regression_significance_level,
            time_col=cfg.date_col,
            min_observations=cfg.min_observations_for_regression,
            n_jobs=cfg.n_jobs,
        )


# =============================================================================
# VISUALIZATION
# =============================================================================

class TrendVisualizer:
    """Creates maps and charts from the cleaned data and summary tables."""

    def __init__(self, df: pd.DataFrame, config: AnalysisConfig, logger: logging.Logger):
        self.df = df
        self.config = config
        self.logger = logger
        plt.style.use('seaborn-v0_8-whitegrid')
        sns.set_palette(config.color_palette)

    def create_all_visualizations(self, trends: dict[str, Any],
                                  regression: Optional[ta.GroupedResult] = None,
                                  joined: Optional[pd.DataFrame] = None) -> list[Path]:
        self.logger.info("=" * 60)
        self.logger.info("GENERATING VISUALIZATIONS")
        self.logger.info("=" * 60)

        output_dir = self.config.output_dir / "plots"
        output_dir.mkdir(parents=True, exist_ok=True)

        written = [
            self._plot_site_map(output_dir),
            self._plot_annual_series(trends.get('series'), output_dir),
            self._plot_trend_summary(trends.get('mann_kendall'), trends.get('linear'), output_dir),
        ]
        if joined is not None and regression is not None:
            written.append(self._plot_concentration_discharge(joined, output_dir))

        written = [p for p in written if p is not None]
        self.logger.info(f"Visualizations saved to {output_dir}")
        return written

    def _save(self, fig: plt.Figure, output_dir: Path, name: str) -> Path:
        path = output_dir / f"{name}.{self.config.figure_format}"
        fig.tight_layout()
        fig.savefig(path, dpi=self.config.figure_dpi, bbox_inches='tight')
        plt.close(fig)
        return path

    def _plot_site_map(self, output_dir: Path) -> Optional[Path]:
        """Sampling sites by basin."""
        if 'latitude' not in self.df.columns or self.df['latitude'].isna().all():
            self.logger.info("  No site coordinates; skipping site map")
            return None

        self.logger.info("  Creating site map...")
        cfg = self.config
        sites = (self.df.dropna(subset=['latitude', 'longitude'])
                 .groupby(cfg.site_col, observed=True)
                 .agg(latitude=('latitude', 'first'), longitude=('longitude', 'first'),
                      basin=(cfg.basin_col, 'first'), n_samples=(cfg.value_col, 'count'))
                 .reset_index())
        sites['basin'] = sites['basin'].astype(str)

        fig, ax = plt.subplots(figsize=(10, 8))
        sns.scatterplot(data=sites, x='longitude', y='latitude', hue='basin', size='n_samples',
                        sizes=(30, 300), alpha=0.8, edgecolor='black', ax=ax)
        ax.set_xlabel('Longitude')
        ax.set_ylabel('Latitude')
        ax.set_title('Sampling Sites by Basin\n(Size = Number of Samples)')
        ax.set_aspect('equal')
        return self._save(fig, output_dir, 'site_map')

    def _plot_annual_series(self, series: Optional[pd.DataFrame], output_dir: Path) -> Optional[Path]:
        """Annual low-flow medians per parameter, one line per basin."""
        if series is None or len(series) == 0:
            return None

        self.logger.info("  Creating annual series plot...")
        cfg = self.config
        data = series.copy()
        data[cfg.basin_col] = data[cfg.basin_col].astype(str)

        grid = sns.relplot(data=data, x='year', y=cfg.value_col, hue=cfg.basin_col,
                           col=cfg.parameter_col, col_wrap=3, kind='line', marker='o',
                           facet_kws={'sharey': False}, height=3.5, aspect=1.3)
        grid.set_axis_labels('Year', f'Low-flow {cfg.aggregation_stat} {cfg.value_col}')
        grid.figure.suptitle('Annual Low-Flow Concentrations', y=1.02)
        return self._save(grid.figure, output_dir, 'annual_series')

    def _plot_trend_summary(self, mk: Optional[ta.GroupedResult], linear: Optional[ta.GroupedResult],
                            output_dir: Path) -> Optional[Path]:
        """Sen's slope vs OLS slope per group, significant groups highlighted."""
        if mk is None or len(mk.summary) == 0:
            return None

        self.logger.info("  Creating trend summary plot...")
        keys = list(self.config.trend_group_keys)
        data = mk.summary.copy()
        data['group'] = data[keys].astype(str).agg(' | '.join, axis=1)
        if linear is not None and len(linear.summary) > 0:
            ols = linear.summary[keys + ['slope']].rename(columns={'slope': 'ols_slope'})
            data = data.merge(ols, on=keys, how='left')
        else:
            data['ols_slope'] = np.nan
        data = data.sort_values('slope')

        fig, ax = plt.subplots(figsize=(10, max(4, 0.4 * len(data))))
        y = np.arange(len(data))
        colors = ['firebrick' if f else 'lightgray' for f in data['trend_flag']]
        ax.barh(y, data['slope'], color=colors, edgecolor='black', alpha=0.8, label="Sen's slope")
        ax.scatter(data['ols_slope'], y, color='navy', marker='D', zorder=3, label='OLS slope')
        ax.axvline(0, color='black', linewidth=1)
        ax.set_yticks(y)
        ax.set_yticklabels(data['group'])
        ax.set_xlabel('Slope (units per year)')
        ax.set_title(f"Trend Summary (red = Mann-Kendall p < {self.config.trend_significance_level})")
        ax.legend(loc='lower right')
        return self._save(fig, output_dir, 'trend_summary')

    def _plot_concentration_discharge(self, joined: pd.DataFrame, output_dir: Path) -> Optional[Path]:
        """Concentration against discharge, one panel per parameter."""
        cfg = self.config
        data = joined.dropna(subset=[cfg.value_col, cfg.flow_col]).copy()
        if len(data) == 0:
            return None

        self.logger.info("  Creating concentration-discharge plot...")
        data[cfg.basin_col] = data[cfg.basin_col].astype(str)
        grid = sns.lmplot(data=data, x=cfg.flow_col, y=cfg.value_col, hue=cfg.basin_col,
                          col=cfg.parameter_col, col_wrap=3, height=3.5, aspect=1.2,
                          scatter_kws={'alpha': 0.5, 's': 15}, facet_kws={'sharex': False, 'sharey': False})
        grid.set_axis_labels('Discharge', 'Concentration')
        return self._save(grid.figure, output_dir, 'concentration_discharge')


# =============================================================================
# REPORT GENERATION
# =============================================================================

class ReportGenerator:
    """Exports summary tables and a text report."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def generate_reports(self, eda: dict[str, pd.DataFrame], trends: dict[str, Any],
                         regression: Optional[ta.GroupedResult] = None) -> None:
        self.logger.info("=" * 60)
        self.logger.info("GENERATING REPORTS")
        self.logger.info("=" * 60)

        output_dir = self.config.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)

        for name, table in eda.items():
            self._write(table, output_dir / f"eda_{name}.csv")

        self._write(trends['annual'], output_dir / 'annual_low_flow_medians.csv')
        self._write(trends['mann_kendall'].summary, output_dir / 'mann_kendall_trends.csv')
        self._write(trends['linear'].summary, output_dir / 'linear_trends.csv')

        dropped = [trends['mann_kendall'].dropped.assign(model='mann_kendall'),
                   trends['linear'].dropped.assign(model='linear_trend')]
        if regression is not None:
            self._write(regression.summary, output_dir / 'discharge_regression.csv')
            dropped.append(regression.dropped.assign(model='discharge_regression'))
        self._write(pd.concat(dropped, ignore_index=True), output_dir / 'dropped_groups.csv')

        self._generate_text_report(trends, regression, output_dir)

    def _write(self, table: pd.DataFrame, path: Path) -> None:
        table.to_csv(path, index=False)
        self.logger.info(f"  Saved: {path.name}")

    def _generate_text_report(self, trends: dict[str, Any], regression: Optional[ta.GroupedResult],
                              output_dir: Path) -> None:
        cfg = self.config
        keys = list(cfg.trend_group_keys)
        lines = [
            "=" * 80,
            "WATER QUALITY TREND ANALYSIS REPORT",
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Low-flow months: {list(cfg.low_flow_months)} ({cfg.aggregation_stat} per year)",
            "=" * 80,
            "",
        ]

        for title, result, alpha in [
            ("LINEAR REGRESSION TRENDS (baseline)", trends['linear'], cfg.trend_significance_level),
            ("MANN-KENDALL / SEN'S SLOPE TRENDS", trends['mann_kendall'], cfg.trend_significance_level),
        ]:
            counts = ta.summarize_outcomes(result)
            lines.extend([
                title,
                "-" * 50,
                f"Groups fitted: {counts['n_fitted']}, significant (p < {alpha}): {counts['n_significant']}, "
                f"dropped: {counts['n_dropped']}",
            ])
            for _, row in result.summary[result.summary['trend_flag']].iterrows():
                label = ', '.join(str(row[k]) for k in keys)
                lines.append(f"  {label}: slope={row['slope']:+.4g}/yr, p={row['p_value']:.4f}")
            lines.append("")

        if regression is not None:
            counts = ta.summarize_outcomes(regression)
            lines.extend([
                "CONCENTRATION VS DISCHARGE",
                "-" * 50,
                f"Groups fitted: {counts['n_fitted']}, significant (p < {cfg.regression_significance_level}): "
                f"{counts['n_significant']}, dropped: {counts['n_dropped']}",
            ])
            sig = regression.summary[regression.summary['trend_flag']]
            for _, row in sig.iterrows():
                label = ', '.join(str(row[k]) for k in cfg.regression_group_keys)
                lines.append(f"  {label}: estimate={row['estimate']:+.4g}, p={row['p_value']:.4f}")
            lines.append("")

        lines.extend([
            "=" * 80,
            "END OF REPORT",
            "=" * 80,
        ])

        with open(output_dir / 'analysis_report.txt', 'w') as f:
            f.write('\n'.join(lines))

        self.logger.info("  Saved: analysis_report.txt")


# =============================================================================
# MAIN EXECUTION
# =============================================================================

def main(config: Optional[AnalysisConfig] = None,
         site_fetcher: Optional[Callable[[list[str]], pd.DataFrame]] = None) -> dict[str, Any]:
    """Main execution function."""
    config = config or AnalysisConfig()
    logger = setup_logging(config.output_dir)

    logger.info("=" * 60)
    logger.info("WATER QUALITY TREND ANALYSIS")
    logger.info("=" * 60)

    warnings.filterwarnings('ignore', category=FutureWarning)

    try:
        # Load and clean data
        loader = WaterQualityDataLoader(config, logger)
        wq = loader.load_water_quality()
        q = loader.load_discharge()

        # Site metadata
        if config.fetch_site_metadata:
            joiner = SiteMetadataJoiner(config, logger, fetcher=site_fetcher)
            site_info = joiner.fetch_site_info(wq[config.site_col].unique())
            wq = joiner.join(wq, site_info)

        # Exploration
        eda = ExploratoryAnalysis(wq, config, logger).run_full_eda()

        # Trends and discharge regression
        analysis = TrendAnalysis(config, logger)
        trends = analysis.run_trends(wq)
        joined = loader.join_discharge(wq, q)
        regression = analysis.run_discharge_regression(joined)

        # Visualizations
        visualizer = TrendVisualizer(wq, config, logger)
        visualizer.create_all_visualizations(trends, regression, joined)

        # Reports
        reporter = ReportGenerator(config, logger)
        reporter.generate_reports(eda, trends, regression)

        logger.info("=" * 60)
        logger.info("ANALYSIS COMPLETE")
        logger.info(f"Results saved to: {config.output_dir.absolute()}")
        logger.info("=" * 60)

    except FileNotFoundError as e:
        logger.error(f"Input file not found: {e}")
        raise
    except Exception as e:
        logger.exception(f"Analysis failed: {e}")
        raise

    return {'eda': eda, 'trends': trends, 'regression': regression}


if __name__ == "__main__":
    main()
