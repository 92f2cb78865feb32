# =========================================
# 📄 File: pedx/enrichment/country_codes.py
# Purpose: Static lookups used when formatting geocoding candidates
#          (ISO 3166 alpha-2 -> alpha-3, alpha-3 -> continent)
# =========================================

from typing import Optional

ISO2_TO_ISO3 = {
    "AD": "AND", "AE": "ARE", "AF": "AFG", "AG": "ATG", "AI": "AIA", "AL": "ALB", "AM": "ARM",
    "AO": "AGO", "AQ": "ATA", "AR": "ARG", "AS": "ASM", "AT": "AUT", "AU": "AUS", "AW": "ABW",
    "AX": "ALA", "AZ": "AZE", "BA": "BIH", "BB": "BRB", "BD": "BGD", "BE": "BEL", "BF": "BFA",
    "BG": "BGR", "BH": "BHR", "BI": "BDI", "BJ": "BEN", "BL": "BLM", "BM": "BMU", "BN": "BRN",
    "BO": "BOL", "BQ": "BES", "BR": "BRA", "BS": "BHS", "BT": "BTN", "BV": "BVT", "BW": "BWA",
    "BY": "BLR", "BZ": "BLZ", "CA": "CAN", "CC": "CCK", "CD": "COD", "CF": "CAF", "CG": "COG",
    "CH": "CHE", "CI": "CIV", "CK": "COK", "CL": "CHL", "CM": "CMR", "CN": "CHN", "CO": "COL",
    "CR": "CRI", "CU": "CUB", "CV": "CPV", "CW": "CUW", "CX": "CXR", "CY": "CYP", "CZ": "CZE",
    "DE": "DEU", "DJ": "DJI", "DK": "DNK", "DM": "DMA", "DO": "DOM", "DZ": "DZA", "EC": "ECU",
    "EE": "EST", "EG": "EGY", "EH": "ESH", "ER": "ERI", "ES": "ESP", "ET": "ETH", "FI": "FIN",
    "FJ": "FJI", "FK": "FLK", "FM": "FSM", "FO": "FRO", "FR": "FRA", "GA": "GAB", "GB": "GBR",
    "GD": "GRD", "GE": "GEO", "GF": "GUF", "GG": "GGY", "GH": "GHA", "GI": "GIB", "GL": "GRL",
    "GM": "GMB", "GN": "GIN", "GP": "GLP", "GQ": "GNQ", "GR": "GRC", "GS": "SGS", "GT": "GTM",
    "GU": "GUM", "GW": "GNB", "GY": "GUY", "HK": "HKG", "HM": "HMD", "HN": "HND", "HR": "HRV",
    "HT": "HTI", "HU": "HUN", "ID": "IDN", "IE": "IRL", "IL": "ISR", "IM": "IMN", "IN": "IND",
    "IO": "IOT", "IQ": "IRQ", "IR": "IRN", "IS": "ISL", "IT": "ITA", "JE": "JEY", "JM": "JAM",
    "JO": "JOR", "JP": "JPN", "KE": "KEN", "KG": "KGZ", "KH": "KHM", "KI": "KIR", "KM": "COM",
    "KN": "KNA", "KP": "PRK", "KR": "KOR", "KW": "KWT", "KY": "CYM", "KZ": "KAZ", "LA": "LAO",
    "LB": "LBN", "LC": "LCA", "LI": "LIE", "LK": "LKA", "LR": "LBR", "LS": "LSO", "LT": "LTU",
    "LU": "LUX", "LV": "LVA", "LY": "LBY", "MA": "MAR", "MC": "MCO", "MD": "MDA", "ME": "MNE",
    "MF": "MAF", "MG": "MDG", "MH": "MHL", "MK": "MKD", "ML": "MLI", "MM": "MMR", "MN": "MNG",
    "MO": "MAC", "MP": "MNP", "MQ": "MTQ", "MR": "MRT", "MS": "MSR", "MT": "MLT", "MU": "MUS",
    "MV": "MDV", "MW": "MWI", "MX": "MEX", "MY": "MYS", "MZ": "MOZ", "NA": "NAM", "NC": "NCL",
    "NE": "NER", "NF": "NFK", "NG": "NGA", "NI": "NIC", "NL": "NLD", "NO": "NOR", "NP": "NPL",
    "NR": "NRU", "NU": "NIU", "NZ": "NZL", "OM": "OMN", "PA": "PAN", "PE": "PER", "PF": "PYF",
    "PG": "PNG", "PH": "PHL", "PK": "PAK", "PL": "POL", "PM": "SPM", "PN": "PCN", "PR": "PRI",
    "PS": "PSE", "PT": "PRT", "PW": "PLW", "PY": "PRY", "QA": "QAT", "RE": "REU", "RO": "ROU",
    "RS": "SRB", "RU": "RUS", "RW": "RWA", "SA": "SAU", "SB": "SLB", "SC": "SYC", "SD": "SDN",
    "SE": "SWE", "SG": "SGP", "SH": "SHN", "SI": "SVN", "SJ": "SJM", "SK": "SVK", "SL": "SLE",
    "SM": "SMR", "SN": "SEN", "SO": "SOM", "SR": "SUR", "SS": "SSD", "ST": "STP", "SV": "SLV",
    "SX": "SXM", "SY": "SYR", "SZ": "SWZ", "TC": "TCA", "TD": "TCD", "TF": "ATF", "TG": "TGO",
    "TH": "THA", "TJ": "TJK", "TK": "TKL", "TL": "TLS", "TM": "TKM", "TN": "TUN", "TO": "TON",
    "TR": "TUR", "TT": "TTO", "TV": "TUV", "TW": "TWN", "TZ": "TZA", "UA": "UKR", "UG": "UGA",
    "UM": "UMI", "US": "USA", "UY": "URY", "UZ": "UZB", "VA": "VAT", "VC": "VCT", "VE": "VEN",
    "VG": "VGB", "VI": "VIR", "VN": "VNM", "VU": "VUT", "WF": "WLF", "WS": "WSM", "YE": "YEM",
    "YT": "MYT", "ZA": "ZAF", "ZM": "ZMB", "ZW": "ZWE"
}

_CONTINENT_MEMBERS = {
    "North America": (
        "USA", "CAN", "MEX", "GTM", "BLZ", "HND", "SLV", "NIC", "CRI", "PAN",
        "CUB", "DOM", "HTI", "JAM", "PRI", "VIR", "BHS", "BRB", "TTO", "GRD",
        "LCA", "VCT", "ATG", "DMA", "KNA", "GRL", "BMU", "CYM", "TCA", "VGB",
        "AIA", "MSR", "ABW", "CUW", "SXM", "MAF", "BLM", "GLP", "MTQ", "SPM", "BES",
    ),
    "South America": (
        "BRA", "ARG", "CHL", "PER", "COL", "VEN", "ECU", "BOL", "PRY", "URY",
        "GUY", "SUR", "GUF", "FLK",
    ),
    "Europe": (
        "GBR", "FRA", "DEU", "ITA", "ESP", "NLD", "BEL", "CHE", "AUT", "DNK",
        "SWE", "NOR", "FIN", "POL", "CZE", "HUN", "ROU", "BGR", "GRC", "PRT",
        "IRL", "ISL", "LUX", "MCO", "LIE", "SMR", "VAT", "AND", "MKD", "ALB",
        "BIH", "SRB", "MNE", "HRV", "SVN", "SVK", "LTU", "LVA", "EST", "BLR",
        "UKR", "MDA", "RUS", "CYP", "MLT", "FRO", "GIB", "GGY", "JEY", "IMN",
        "ALA", "SJM",
    ),
    "Asia": (
        "CHN", "JPN", "KOR", "PRK", "IND", "IDN", "THA", "VNM", "PHL", "MYS",
        "SGP", "MMR", "KHM", "LAO", "BGD", "PAK", "AFG", "IRN", "IRQ", "SAU",
        "ARE", "QAT", "KWT", "BHR", "OMN", "YEM", "JOR", "LBN", "SYR", "ISR",
        "PSE", "TUR", "GEO", "ARM", "AZE", "KAZ", "KGZ", "TJK", "UZB", "TKM",
        "MNG", "NPL", "BTN", "MDV", "LKA", "TWN", "HKG", "MAC", "BRN", "TLS",
        "IOT", "CXR", "CCK",
    ),
    "Africa": (
        "EGY", "LBY", "TUN", "DZA", "MAR", "ESH", "SDN", "SSD", "ETH", "ERI",
        "DJI", "SOM", "KEN", "UGA", "TZA", "RWA", "BDI", "COD", "COG", "CAF",
        "TCD", "CMR", "NGA", "NER", "BFA", "MLI", "SEN", "GMB", "GIN", "GNB",
        "SLE", "LBR", "CIV", "GHA", "TGO", "BEN", "GAB", "GNQ", "STP", "AGO",
        "ZMB", "ZWE", "BWA", "NAM", "ZAF", "LSO", "SWZ", "MOZ", "MDG", "MWI",
        "MUS", "SYC", "COM", "MYT", "REU", "SHN", "CPV", "MRT",
    ),
    "Oceania": (
        "AUS", "NZL", "PNG", "FJI", "SLB", "VUT", "NCL", "PYF", "WSM", "TON",
        "KIR", "TUV", "NRU", "PLW", "FSM", "MHL", "COK", "NIU", "TKL", "ASM",
        "GUM", "MNP", "NFK", "PCN", "WLF", "UMI",
    ),
    "Antarctica": ("ATA", "ATF", "BVT", "HMD", "SGS"),
}

ISO3_TO_CONTINENT = {
    iso3: continent
    for continent, members in _CONTINENT_MEMBERS.items()
    for iso3 in members
}

# GeoNames `continentCode` values
CONTINENT_CODES = {
    "AF": "Africa",
    "AN": "Antarctica",
    "AS": "Asia",
    "EU": "Europe",
    "NA": "North America",
    "OC": "Oceania",
    "SA": "South America",
}


def to_iso3(country_code: Optional[str]) -> Optional[str]:
    """Alpha-2 to alpha-3; unknown codes are returned unchanged."""
    if not country_code:
        return None
    code = country_code.strip().upper()
    return ISO2_TO_ISO3.get(code, code)


def continent_for(iso3: Optional[str], continent_code: Optional[str] = None) -> Optional[str]:
    if iso3 and iso3.upper() in ISO3_TO_CONTINENT:
        return ISO3_TO_CONTINENT[iso3.upper()]
    if continent_code:
        return CONTINENT_CODES.get(continent_code.strip().upper())
    return None
