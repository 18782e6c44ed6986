"""Source registry — static descriptors of parcel data providers.

Each entry names an endpoint, the fields to request, and the property that
identifies a parcel. Lookups fail loudly on unknown ids.

Usage:
    source = get_source("campbell")
    print(source.api.url)
"""

from fieldline.models import ArcGISApi, SocrataApi, Source


class UnknownSourceError(KeyError):
    """No registry entry for the requested source id."""

    def __init__(self, source_id: str, available: list[str]) -> None:
        super().__init__(source_id)
        self.source_id = source_id
        self.available = available

    def __str__(self) -> str:
        return f"Unknown source: {self.source_id}. Available: {', '.join(self.available)}"


SF_URBAN = Source(
    id="sf-urban",
    name="San Francisco Buildings",
    region="California",
    api=SocrataApi(
        url="https://data.sfgov.org/resource/wv5m-vpq2.json",
        fields=(
            "parcel_number",
            "year_property_built",
            "use_definition",
            "the_geom",
            "analysis_neighborhood",
            "property_location",
            "property_area",
            "number_of_stories",
            "number_of_units",
        ),
        where="closed_roll_year='2024' AND the_geom IS NOT NULL",
    ),
    id_field="parcel_number",
    expected_count=212000,
    update_frequency="monthly",
    attribution="City of San Francisco",
    attribution_url="https://data.sfgov.org",
    license="PDDL",
)

CAMPBELL = Source(
    id="campbell",
    name="Campbell Parcels",
    region="California",
    api=ArcGISApi(
        url="https://gis.campbellca.gov/arcgis/rest/services/BaseFeatureLayers/ParcelsPublic/FeatureServer/0/query",
        out_fields=(
            "APN",
            "YEAR_BUILT",
            "EFF_YEAR_BUILT",
            "UseCodeDescription",
            "SITUSFULL",
            "TTL_SQFT_ALL",
        ),
    ),
    id_field="APN",
    expected_count=15000,
    update_frequency="monthly",
    attribution="City of Campbell",
    attribution_url="https://gis.campbellca.gov",
)

PALO_ALTO = Source(
    id="palo-alto",
    name="Palo Alto Parcels",
    region="California",
    api=ArcGISApi(
        url="https://gis.cityofpaloalto.org/server/rest/services/Parcel/ParcelReport/MapServer/16/query",
        out_fields=(
            "APN",
            "YEARBUILT",
            "EFFECTIVEYEARBUILT",
            "LANDUSEGIS",
            "ADDRESSNUMBER",
            "STREET",
            "LOTSIZE",
            "ZONEGIS",
        ),
    ),
    id_field="APN",
    expected_count=30000,
    update_frequency="monthly",
    attribution="City of Palo Alto",
    attribution_url="https://www.cityofpaloalto.org",
)

SOLANO = Source(
    id="solano",
    name="Solano County Parcels",
    region="California",
    api=ArcGISApi(
        url="https://services2.arcgis.com/SCn6czzcqKAFwdGU/arcgis/rest/services/Parcels_Public_Aumentum/FeatureServer/0/query",
        out_fields=(
            "parcelid",
            "yrbuilt",
            "sitecity",
            "sitenum",
            "siteroad",
            "usecode",
            "use_desc",
            "lotsize",
            "total_area",
            "stories",
        ),
        where="yrbuilt > 1800",
    ),
    id_field="parcelid",
    expected_count=155000,
    update_frequency="monthly",
    attribution="Solano County",
    attribution_url="https://www.solanocounty.com",
)

HAYWARD = Source(
    id="hayward",
    name="Hayward Parcels",
    region="California",
    api=ArcGISApi(
        url="https://maps.hayward-ca.gov/arcgis/rest/services/External/Assessor_Parcels/MapServer/0/query",
        out_fields=(
            "APN_GIS",
            "YEARBUILT",
            "USECODE",
            "USEDESCRIPTION",
            "P_HouseNum",
            "P_Street_Name",
            "P_AREA",
            "BUILDINGAREA",
            "NUMBERUNITS",
        ),
    ),
    id_field="APN_GIS",
    expected_count=68000,
    update_frequency="monthly",
    attribution="City of Hayward",
    attribution_url="https://www.hayward-ca.gov",
)


SOURCES: dict[str, Source] = {
    s.id: s for s in (SF_URBAN, CAMPBELL, PALO_ALTO, SOLANO, HAYWARD)
}


def get_source(source_id: str) -> Source:
    """Look up a source by id.

    Raises:
        UnknownSourceError: If no source is registered under ``source_id``
    """
    try:
        return SOURCES[source_id]
    except KeyError:
        raise UnknownSourceError(source_id, sorted(SOURCES)) from None


def list_sources() -> list[Source]:
    """All registered sources, sorted by id."""
    return [SOURCES[k] for k in sorted(SOURCES)]
