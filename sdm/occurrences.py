"""
Occurrence API utilities for fetching species sightings from OBIS and GBIF.
"""

import logging
from typing import Optional

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from tqdm import tqdm
from urllib3.util.retry import Retry

from .exceptions import OccurrenceFetchError

logger = logging.getLogger(__name__)


OBIS_OCCURRENCE_URL = "https://api.obis.org/v3/occurrence"
GBIF_OCCURRENCE_URL = "https://api.gbif.org/v1/occurrence/search"
GBIF_SPECIES_MATCH_URL = "https://api.gbif.org/v1/species/match"

# GBIF refuses offset + limit above this
GBIF_MAX_OFFSET = 100_000

OCCURRENCE_COLUMNS = ["id", "taxon", "longitude", "latitude", "date", "year", "month", "dataset"]

# Time-of-day followed by a UTC designator or offset, e.g. "T22:00:00-04:00"
UTC_OFFSET_PATTERN = r"(T\d{2}(?::?\d{2}){0,2}(?:\.\d+)?)(?:Z|[+-]\d{2}(?::?\d{2})?)$"


def make_session(retries: int = 3, backoff_factor: float = 1.0) -> requests.Session:
    """
    Create a Session that retries throttled and failed requests.

    Args:
        retries: Number of retries per request
        backoff_factor: Exponential backoff factor between retries (seconds)

    Returns:
        Configured requests Session
    """
    session = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=("GET",),
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def _get_json(session, url: str, params: dict) -> dict:
    try:
        response = session.get(url, params=params, timeout=60)
        response.raise_for_status()
        return response.json()
    except (requests.RequestException, ValueError) as e:
        raise OccurrenceFetchError(
            f"Request to {url} failed: {e}", {"url": url, "params": params}
        ) from e


def bbox_to_wkt(bbox: tuple[float, float, float, float]) -> str:
    """Convert (min_lon, min_lat, max_lon, max_lat) to a WKT polygon."""
    min_lon, min_lat, max_lon, max_lat = bbox
    return (
        f"POLYGON(({min_lon} {min_lat}, {max_lon} {min_lat}, {max_lon} {max_lat}, "
        f"{min_lon} {max_lat}, {min_lon} {min_lat}))"
    )


def fetch_obis_occurrences(
    scientific_name: str,
    bbox: Optional[tuple[float, float, float, float]] = None,
    page_size: int = 5000,
    session: Optional[requests.Session] = None,
) -> list[dict]:
    """
    Fetch all OBIS occurrences for a taxon name.

    OBIS pages by record id: each request asks for records after the last
    id already seen.

    Args:
        scientific_name: Scientific name of the taxon (e.g., "Calanus finmarchicus")
        bbox: Optional (min_lon, min_lat, max_lon, max_lat) restriction
        page_size: Number of records per API request
        session: Optional requests session (default: one with retries)

    Returns:
        List of OBIS occurrence dictionaries
    """
    session = session or make_session()
    params = {"scientificname": scientific_name, "size": page_size}
    if bbox is not None:
        params["geometry"] = bbox_to_wkt(bbox)

    all_occurrences = []
    progress = None

    while True:
        data = _get_json(session, OBIS_OCCURRENCE_URL, params)
        results = data.get("results", [])
        if progress is None:
            progress = tqdm(total=data.get("total", 0), desc="OBIS occurrences", disable=None)
        if not results:
            break

        all_occurrences.extend(results)
        progress.update(len(results))

        if len(results) < page_size or len(all_occurrences) >= data.get("total", 0):
            break

        params = {**params, "after": results[-1]["id"]}

    if progress is not None:
        progress.close()

    return all_occurrences


def get_species_key(species_name: str, session: Optional[requests.Session] = None) -> Optional[int]:
    """
    Get GBIF taxon key for a species by name.

    Args:
        species_name: Scientific name of the species (e.g., "Calanus finmarchicus")
        session: Optional requests session

    Returns:
        GBIF taxon key or None if not found
    """
    session = session or make_session()
    data = _get_json(session, GBIF_SPECIES_MATCH_URL, {"name": species_name})

    if data.get("matchType") == "NONE":
        return None

    return data.get("usageKey")


def fetch_gbif_occurrences(
    taxon_key: int,
    bbox: Optional[tuple[float, float, float, float]] = None,
    limit: int = 300,
    session: Optional[requests.Session] = None,
) -> list[dict]:
    """
    Fetch occurrences from GBIF API with pagination.

    Args:
        taxon_key: GBIF taxon key for the species
        bbox: Optional (min_lon, min_lat, max_lon, max_lat) restriction
        limit: Number of records per API request
        session: Optional requests session

    Returns:
        List of occurrence dictionaries
    """
    session = session or make_session()
    all_occurrences = []
    offset = 0

    while offset + limit <= GBIF_MAX_OFFSET:
        params = {
            "taxonKey": taxon_key,
            "hasCoordinate": "true",
            "hasGeospatialIssue": "false",
            "limit": limit,
            "offset": offset,
        }
        if bbox is not None:
            min_lon, min_lat, max_lon, max_lat = bbox
            params["decimalLatitude"] = f"{min_lat},{max_lat}"
            params["decimalLongitude"] = f"{min_lon},{max_lon}"

        data = _get_json(session, GBIF_OCCURRENCE_URL, params)

        results = data.get("results", [])
        if not results:
            break

        all_occurrences.extend(results)

        if data.get("endOfRecords") or len(all_occurrences) >= data.get("count", 0):
            break

        offset += limit
    else:
        logger.warning(f"GBIF offset cap reached; returning the first {len(all_occurrences)} records")

    return all_occurrences


def _first_column(frame: pd.DataFrame, *names: str) -> pd.Series:
    for name in names:
        if name in frame.columns:
            return frame[name]
    return pd.Series([None] * len(frame), index=frame.index, dtype=object)


def occurrences_to_frame(records: list[dict]) -> pd.DataFrame:
    """
    Normalize OBIS or GBIF occurrence records into a table.

    Records without coordinates are dropped. The month is derived from the
    event date as recorded, ignoring any UTC offset; for date intervals
    ("2010-08-01/2010-08-05") the start is used.

    Args:
        records: Occurrence dictionaries as returned by the fetch functions

    Returns:
        DataFrame with columns id, taxon, longitude, latitude, date, year, month, dataset
    """
    raw = pd.DataFrame.from_records(records)
    if raw.empty:
        frame = pd.DataFrame({column: pd.Series(dtype=object) for column in OCCURRENCE_COLUMNS})
        frame["longitude"] = frame["longitude"].astype(float)
        frame["latitude"] = frame["latitude"].astype(float)
        frame["date"] = pd.to_datetime(frame["date"])
        frame["year"] = frame["year"].astype("Int64")
        frame["month"] = frame["month"].astype("Int64")
        return frame

    event_date = _first_column(raw, "eventDate").astype("string").str.split("/").str[0]
    # Keep the local wall-clock date; converting to UTC can move a sighting into the next month
    event_date = event_date.str.replace(UTC_OFFSET_PATTERN, r"\1", regex=True)
    date = pd.to_datetime(event_date, errors="coerce", format="ISO8601")

    fallback_month = pd.to_numeric(_first_column(raw, "month"), errors="coerce")
    fallback_year = pd.to_numeric(_first_column(raw, "year", "date_year"), errors="coerce")

    frame = pd.DataFrame({
        "id": _first_column(raw, "id", "key", "gbifID"),
        "taxon": _first_column(raw, "scientificName", "species"),
        "longitude": pd.to_numeric(_first_column(raw, "decimalLongitude"), errors="coerce"),
        "latitude": pd.to_numeric(_first_column(raw, "decimalLatitude"), errors="coerce"),
        "date": date,
        "year": date.dt.year.fillna(fallback_year).astype("Int64"),
        "month": date.dt.month.fillna(fallback_month).astype("Int64"),
        "dataset": _first_column(raw, "datasetName", "dataset_id", "datasetKey"),
    })

    n_before = len(frame)
    frame = frame.dropna(subset=["longitude", "latitude"]).reset_index(drop=True)
    if len(frame) < n_before:
        logger.info(f"Dropped {n_before - len(frame)} records without coordinates")

    return frame


def fetch_occurrences(
    taxon_name: str,
    source: str = "obis",
    bbox: Optional[tuple[float, float, float, float]] = None,
    session: Optional[requests.Session] = None,
) -> pd.DataFrame:
    """
    Fetch all known occurrence records for a taxon as a table.

    Args:
        taxon_name: Scientific name of the taxon
        source: "obis" or "gbif"
        bbox: Optional (min_lon, min_lat, max_lon, max_lat) restriction
        session: Optional requests session

    Returns:
        Normalized occurrence DataFrame (see occurrences_to_frame)
    """
    session = session or make_session()

    if source == "obis":
        records = fetch_obis_occurrences(taxon_name, bbox=bbox, session=session)
    elif source == "gbif":
        taxon_key = get_species_key(taxon_name, session=session)
        if taxon_key is None:
            raise OccurrenceFetchError(
                f"Species not found in GBIF: {taxon_name}", {"taxon": taxon_name}
            )
        records = fetch_gbif_occurrences(taxon_key, bbox=bbox, session=session)
    else:
        raise ValueError(f"Unknown occurrence source: {source}. Choose from ['obis', 'gbif']")

    frame = occurrences_to_frame(records)
    logger.info(f"Fetched {len(frame)} {source.upper()} occurrences for {taxon_name}")
    return frame


def occurrences_to_geojson(occurrences: pd.DataFrame, species_name: str) -> dict:
    """
    Convert an occurrence table to GeoJSON format.

    Args:
        occurrences: Occurrence DataFrame
        species_name: Name of the species

    Returns:
        GeoJSON FeatureCollection
    """
    features = []

    for row in occurrences.itertuples(index=False):
        date = getattr(row, "date", None)
        feature = {
            "type": "Feature",
            "properties": {
                "name": species_name,
                "id": None if pd.isna(getattr(row, "id", None)) else str(row.id),
                "date": None if pd.isna(date) else pd.Timestamp(date).isoformat(),
                "dataset": None if pd.isna(getattr(row, "dataset", None)) else str(row.dataset),
            },
            "geometry": {
                "type": "Point",
                "coordinates": [float(row.longitude), float(row.latitude)]
            }
        }
        features.append(feature)

    return {
        "type": "FeatureCollection",
        "name": f"{species_name.replace(' ', '_')}_occurrences",
        "crs": {
            "type": "name",
            "properties": {"name": "urn:ogc:def:crs:OGC:1.3:CRS84"}
        },
        "features": features
    }


def extract_coordinates(occurrences: pd.DataFrame) -> list[tuple[float, float]]:
    """Extract (lon, lat) coordinates from an occurrence table."""
    return list(zip(occurrences["longitude"].astype(float), occurrences["latitude"].astype(float)))
