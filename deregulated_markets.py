#!/usr/bin/env python3
"""
Texas deregulated electricity market reference data.

In the ERCOT retail-choice market, customers choose their retail provider but
the transmission/distribution service provider (TDSP) is fixed by location.
Municipal utilities and electric cooperatives are exempt from retail choice.

This module holds the static tables the resolution engine relies on:
- TDSP directory (name, DUNS, weather zone, contact info)
- ZIP range heuristics used to pick which TDSP lookup to call
- Known municipal / cooperative (non-deregulated) areas
- City slug helpers
"""

import re
from typing import Dict, List, Optional, Tuple


TEXAS_MARKET = {
    "name": "Texas",
    "grid_operator": "ERCOT",
    "choice_website": "https://www.powertochoose.org",
    "tdu_term": "TDSP",  # Transmission/Distribution Service Provider
    "rep_term": "REP",   # Retail Electric Provider
    "notes": "Most of Texas is deregulated. Municipal utilities and co-ops are exempt.",
}

# Texas TDSPs keyed by utility id
TEXAS_TDSPS = {
    "oncor": {
        "name": "Oncor Electric Delivery",
        "duns": "1039940674000",
        "zone": "North",
        "provider": "oncor",
        "service_area": "North/Central Texas (Dallas, Fort Worth, Waco, Tyler)",
        "phone": "1-888-313-4747",
        "website": "https://www.oncor.com",
    },
    "centerpoint": {
        "name": "CenterPoint Energy Houston Electric",
        "duns": "957877905",
        "zone": "Coast",
        "provider": "centerpoint",
        "service_area": "Houston metro area",
        "phone": "713-207-2222",
        "website": "https://www.centerpointenergy.com",
    },
    "aep_texas_central": {
        "name": "AEP Texas Central",
        "duns": "007924772",
        "zone": "South",
        "provider": "aep_texas",
        "service_area": "South Texas (Corpus Christi, McAllen, Laredo)",
        "phone": "1-877-373-4858",
        "website": "https://www.aeptexas.com",
    },
    "aep_texas_north": {
        "name": "AEP Texas North",
        "duns": "007923311",
        "zone": "West",
        "provider": "aep_texas",
        "service_area": "West Texas (Abilene, San Angelo)",
        "phone": "1-866-223-8508",
        "website": "https://www.aeptexas.com",
    },
    "tnmp": {
        "name": "Texas-New Mexico Power",
        "duns": "007929441",
        "zone": "Coast",
        "provider": "tnmp",
        "service_area": "Various areas across Texas (Gulf Coast, North Central, West)",
        "phone": "1-888-866-7456",
        "website": "https://www.tnmp.com",
    },
    "lp_and_l": {
        "name": "Lubbock Power & Light",
        "duns": "0582138934100",
        "zone": "North",
        "provider": None,  # No territory lookup API
        "service_area": "Lubbock",
        "phone": "806-775-2509",
        "website": "https://www.lpandl.com",
    },
}

# Inclusive ZIP ranges -> TDSP lookup provider. Heuristic, not authoritative:
# the ranges only decide which TDSP lookup is worth calling.
TDSP_ZIP_RANGES: List[Tuple[int, int, str]] = [
    (75000, 76999, "oncor"),
    (77000, 77499, "centerpoint"),
    (77500, 77699, "tnmp"),
    (77700, 77999, "centerpoint"),
    (78000, 79999, "aep_texas"),
]

# Areas outside retail choice. Exact ZIPs take precedence over prefixes.
NON_DEREGULATED_ZIPS = {
    "75932": {
        "classification": "cooperative",
        "name": "Cherokee County Electric Cooperative",
        "phone": "(903) 683-2416",
        "website": "https://ccec.coop",
    },
    "78570": {
        "classification": "cooperative",
        "name": "Magic Valley Electric Cooperative",
        "phone": "1-956-383-6651",
        "website": "https://www.mvec.net",
    },
}

NON_DEREGULATED_PREFIXES = {
    "787": {
        "classification": "municipal",
        "name": "Austin Energy",
        "phone": "512-494-9400",
        "website": "https://austinenergy.com",
    },
    "782": {
        "classification": "municipal",
        "name": "CPS Energy",
        "phone": "210-353-2222",
        "website": "https://www.cpsenergy.com",
    },
    "762": {
        "classification": "municipal",
        "name": "Denton Municipal Electric",
        "phone": "940-349-8700",
        "website": "https://www.cityofdenton.com",
    },
}

# Display names that a plain title-case of the slug gets wrong
CITY_DISPLAY_OVERRIDES = {
    "mckinney": "McKinney",
    "desoto": "DeSoto",
    "mcallen": "McAllen",
    "the-woodlands": "The Woodlands",
}


def slugify_city(name: str) -> str:
    """
    Convert a city name to its URL slug.

    "Fort Worth" -> "fort-worth", "St. Paul" -> "st-paul"
    """
    if not name:
        return ""
    slug = name.strip().lower()
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    return slug.strip("-")


def city_display_name(slug: str) -> str:
    """Convert a city slug back to a display name."""
    if slug in CITY_DISPLAY_OVERRIDES:
        return CITY_DISPLAY_OVERRIDES[slug]
    return " ".join(part.capitalize() for part in slug.split("-") if part)


def lookup_texas_tdu(zip_code: str) -> Optional[Dict]:
    """
    Look up the TDSP lookup provider for a Texas ZIP code from the range tables.

    Returns:
        Dict with "provider", "low", "high", or None when no range matches.
    """
    if not zip_code or not zip_code.isdigit():
        return None

    value = int(zip_code)
    for low, high, provider in TDSP_ZIP_RANGES:
        if low <= value <= high:
            return {"provider": provider, "low": low, "high": high}
    return None


def get_tdsp_info(utility_id: str) -> Optional[Dict]:
    """Get TDSP directory info for a utility id."""
    return TEXAS_TDSPS.get(utility_id)


def find_tdsp_by_duns(duns: str) -> Optional[str]:
    """Map a DUNS number to a utility id."""
    if not duns:
        return None
    duns = str(duns).strip()
    for utility_id, info in TEXAS_TDSPS.items():
        if info["duns"] == duns:
            return utility_id
    return None


def find_tdsp_by_name(name: str) -> Optional[str]:
    """
    Map a utility name as reported by a provider to a utility id.

    Matching is loose: "ONCOR ELECTRIC DELIVERY COMPANY LLC" -> "oncor".
    """
    if not name:
        return None
    normalized = name.lower()
    if "oncor" in normalized:
        return "oncor"
    if "centerpoint" in normalized or "center point" in normalized:
        return "centerpoint"
    if "aep" in normalized and "north" in normalized:
        return "aep_texas_north"
    if "aep" in normalized:
        return "aep_texas_central"
    if "tnmp" in normalized or "texas-new mexico" in normalized or "texas new mexico" in normalized:
        return "tnmp"
    if "lubbock" in normalized:
        return "lp_and_l"
    return None


def get_non_deregulated_info(zip_code: str) -> Optional[Dict]:
    """Return municipal/cooperative info if the ZIP is exempt from retail choice."""
    if not zip_code:
        return None
    if zip_code in NON_DEREGULATED_ZIPS:
        return NON_DEREGULATED_ZIPS[zip_code]
    return NON_DEREGULATED_PREFIXES.get(zip_code[:3])


def classify_territory(zip_code: str) -> str:
    """
    Classify a ZIP that could not be resolved.

    Returns:
        "municipal", "cooperative" or "unknown"
    """
    info = get_non_deregulated_info(zip_code)
    if info:
        return info["classification"]
    return "unknown"


if __name__ == "__main__":
    print("Texas TDSP Lookup Examples:")
    print("=" * 60)

    for zip_code in ["75201", "77001", "77550", "78401", "79601", "75932", "78701"]:
        tdu = lookup_texas_tdu(zip_code)
        provider = tdu["provider"] if tdu else "none"
        print(f"  {zip_code}: provider={provider} classification={classify_territory(zip_code)}")
