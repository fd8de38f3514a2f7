"""
Historical pickup records.

Reads NYC TLC yellow taxi trip records (CSV) into a time-ordered
GeoDataFrame of pickup events, and downloads the monthly files the trip
model was trained on.
"""

import logging
import time
from pathlib import Path
from typing import Iterable, Optional

import geopandas as gpd
import pandas as pd
import requests

logger = logging.getLogger(__name__)

TLC_URL_TEMPLATE = "https://s3.amazonaws.com/nyc-tlc/trip+data/yellow_tripdata_{year:04d}-{month:02d}.csv"

# Twelve months of training data: July 2015 to June 2016
DEFAULT_TRAINING_MONTHS = [
    (2016, 1), (2016, 2), (2016, 3), (2016, 4), (2016, 5), (2016, 6),
    (2015, 7), (2015, 8), (2015, 9), (2015, 10), (2015, 11), (2015, 12),
]

# Column names used by the different TLC schema versions
TIME_COLUMNS = ["tpep_pickup_datetime", "pickup_datetime", "Trip_Pickup_DateTime"]
LON_COLUMNS = ["pickup_longitude", "Start_Lon", "pickup_lon"]
LAT_COLUMNS = ["pickup_latitude", "Start_Lat", "pickup_lat"]


def _detect_column(columns: Iterable[str], candidates: list[str]) -> Optional[str]:
    lookup = {c.strip().lower(): c for c in columns}
    for name in candidates:
        if name.lower() in lookup:
            return lookup[name.lower()]
    return None


def parse_pickups(
    df: pd.DataFrame,
    tz: str = "America/New_York",
    bbox: Optional[tuple[float, float, float, float]] = None,
) -> gpd.GeoDataFrame:
    """
    Turn raw trip records into pickup events.

    Args:
        df: Raw trip records
        tz: Time zone the pickup timestamps are recorded in
        bbox: Optional (west, south, east, north) filter

    Returns:
        GeoDataFrame with ``time`` (Unix seconds), ``lon``, ``lat`` and point
        geometry in EPSG:4326, sorted by time

    Raises:
        ValueError: If the time or coordinate columns cannot be found
    """
    time_col = _detect_column(df.columns, TIME_COLUMNS)
    lon_col = _detect_column(df.columns, LON_COLUMNS)
    lat_col = _detect_column(df.columns, LAT_COLUMNS)
    if time_col is None or lon_col is None or lat_col is None:
        raise ValueError(
            f"Could not detect pickup time/coordinate columns. "
            f"Available columns: {list(df.columns)}"
        )

    lon = pd.to_numeric(df[lon_col], errors="coerce")
    lat = pd.to_numeric(df[lat_col], errors="coerce")
    stamps = pd.to_datetime(df[time_col], errors="coerce")

    # Missing coordinates are recorded as 0.0 in the older schemas
    valid = lon.notna() & lat.notna() & stamps.notna() & (lon != 0) & (lat != 0)
    n_dropped = int((~valid).sum())
    if n_dropped:
        logger.info(f"Dropped {n_dropped} records without pickup time or coordinates")

    stamps = stamps[valid]
    if stamps.dt.tz is None:
        stamps = stamps.dt.tz_localize(tz, ambiguous="NaT", nonexistent="NaT")
    times = (stamps.dt.tz_convert("UTC") - pd.Timestamp(0, tz="UTC")) // pd.Timedelta(seconds=1)

    gdf = gpd.GeoDataFrame(
        {
            "time": times,
            "lon": lon[valid].astype(float),
            "lat": lat[valid].astype(float),
        },
        geometry=gpd.points_from_xy(lon[valid], lat[valid]),
        crs="EPSG:4326",
    )
    gdf = gdf[gdf["time"].notna()].copy()
    gdf["time"] = gdf["time"].astype("int64")

    if bbox is not None:
        west, south, east, north = bbox
        gdf = gdf.cx[west:east, south:north]

    return gdf.sort_values("time", kind="stable").reset_index(drop=True)


def load_pickups(
    paths: Iterable[Path | str],
    tz: str = "America/New_York",
    bbox: Optional[tuple[float, float, float, float]] = None,
) -> gpd.GeoDataFrame:
    """
    Load pickup events from one or more TLC CSV files.

    Args:
        paths: CSV files
        tz: Time zone of the recorded timestamps
        bbox: Optional (west, south, east, north) filter

    Returns:
        Time-ordered GeoDataFrame of pickups
    """
    frames = []
    for path in paths:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Trip record file not found: {path}")
        logger.info(f"Loading pickups from {path}")
        frames.append(parse_pickups(pd.read_csv(path, skipinitialspace=True), tz=tz, bbox=bbox))

    if not frames:
        return gpd.GeoDataFrame(
            {"time": pd.Series(dtype="int64"), "lon": pd.Series(dtype=float), "lat": pd.Series(dtype=float)},
            geometry=gpd.GeoSeries([], crs="EPSG:4326"),
            crs="EPSG:4326",
        )

    gdf = pd.concat(frames, ignore_index=True)
    gdf = gpd.GeoDataFrame(gdf, geometry="geometry", crs="EPSG:4326")
    logger.info(f"Loaded {len(gdf)} pickups from {len(frames)} files")
    return gdf.sort_values("time", kind="stable").reset_index(drop=True)


def download_trip_records(
    year: int,
    month: int,
    dest_dir: Path | str = "datasets",
    timeout: int = 120,
    max_retries: int = 3,
    use_cache: bool = True,
    url_template: str = TLC_URL_TEMPLATE,
) -> Path:
    """
    Download one month of yellow taxi trip records.

    The legacy public bucket behind ``TLC_URL_TEMPLATE`` no longer serves
    the 2015-2016 CSV files. Point ``url_template`` at a mirror, or place
    the files in ``dest_dir`` beforehand so the cached copy is used.

    Args:
        year: Year of the records
        month: Month of the records (1-12)
        dest_dir: Download directory
        timeout: Request timeout in seconds
        max_retries: Maximum number of attempts
        use_cache: Skip the download if the file already exists
        url_template: Format string with ``year`` and ``month`` fields

    Returns:
        Path of the CSV file

    Raises:
        requests.HTTPError: If the download fails after retries
    """
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    path = dest_dir / f"yellow_tripdata_{year:04d}-{month:02d}.csv"

    if use_cache and path.exists():
        logger.info(f"Using cached {path}")
        return path

    url = url_template.format(year=year, month=month)
    tmp_path = path.with_suffix(".part")

    # Retry with exponential backoff
    for attempt in range(max_retries):
        try:
            with requests.get(url, stream=True, timeout=timeout) as response:
                response.raise_for_status()
                with tmp_path.open("wb") as f:
                    for chunk in response.iter_content(chunk_size=1 << 20):
                        f.write(chunk)
            tmp_path.replace(path)
            logger.info(f"Downloaded {url} to {path}")
            return path
        except requests.RequestException as e:
            if attempt < max_retries - 1:
                wait_time = 2 ** (attempt + 1)
                logger.warning(f"Request failed, retrying in {wait_time}s: {e}")
                time.sleep(wait_time)
            else:
                raise


def get_pickup_stats(gdf: gpd.GeoDataFrame) -> dict:
    """
    Basic statistics of a pickup dataset.

    Args:
        gdf: Pickups as returned by load_pickups

    Returns:
        Dict with counts, time range and bounds
    """
    if gdf.empty:
        return {
            "n_pickups": 0,
            "first_time": None,
            "last_time": None,
        }

    return {
        "n_pickups": len(gdf),
        "first_time": int(gdf["time"].min()),
        "last_time": int(gdf["time"].max()),
        "bounds": {
            "south": gdf.total_bounds[1],
            "west": gdf.total_bounds[0],
            "north": gdf.total_bounds[3],
            "east": gdf.total_bounds[2],
        },
    }
