# =========================================
# 📄 File: pedx/db/models.py
# Purpose: ORM table definitions for the pedestrian-behaviour warehouse
# =========================================

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import declarative_base

# Tables carry no schema; get_engine() maps them onto cfg["db_schema"]
Base = declarative_base()


def _created_at():
    return Column(DateTime(timezone=True), nullable=False, server_default=func.now())


def _updated_at():
    return Column(DateTime(timezone=True), nullable=False, server_default=func.now())


# -----------------------
# Core entities
# -----------------------
class City(Base):
    """Canonical city dimension (one row per real-world city)"""

    __tablename__ = "cities"
    __table_args__ = (
        UniqueConstraint("city", "country", name="uq_cities_city_country"),
        Index("ix_cities_canonical_key", "canonical_key"),
        Index("ix_cities_source_key", "source_key"),
    )

    id = Column(Integer, primary_key=True)
    city = Column(String, nullable=False)
    state = Column(String)
    country = Column(String, nullable=False)
    iso3 = Column(String(3))
    continent = Column(String)
    latitude = Column(Float)
    longitude = Column(Float)
    gmp = Column(Float)
    population_city = Column(Float)
    population_country = Column(Float)
    traffic_mortality = Column(Float)
    literacy_rate = Column(Float)
    avg_height = Column(Float)
    med_age = Column(Float)
    gini = Column(Float)
    canonical_key = Column(String, nullable=False)
    # Key the row was first created under when its country was still the placeholder
    source_key = Column(String)
    needs_enrichment = Column(Boolean, nullable=False, default=False)
    created_at = _created_at()
    updated_at = _updated_at()


class Video(Base):
    """One recorded observation session, owned by exactly one city"""

    __tablename__ = "videos"
    __table_args__ = (
        UniqueConstraint("link", name="uq_videos_link"),
        Index("ix_videos_city_id", "city_id"),
    )

    id = Column(Integer, primary_key=True)
    city_id = Column(
        Integer, ForeignKey("cities.id", ondelete="RESTRICT"), nullable=False
    )
    link = Column(String, nullable=False)
    video_name = Column(String)
    city_link = Column(String)
    duration_seconds = Column(Float)
    total_frames = Column(Integer)
    analysis_seconds = Column(Float)
    total_pedestrians = Column(Integer)
    total_crossed_pedestrians = Column(Integer)
    total_vehicles = Column(Integer)
    average_age = Column(Float)
    phone_usage_ratio = Column(Float)
    risky_crossing_ratio = Column(Float)
    run_red_light_ratio = Column(Float)
    crosswalk_usage_ratio = Column(Float)
    traffic_signs_ratio = Column(Float)
    top3_vehicles = Column(String)
    main_weather = Column(String)
    sidewalk_prob = Column(Float)
    crosswalk_prob = Column(Float)
    traffic_light_prob = Column(Float)
    crack_prob = Column(Float)
    potholes_prob = Column(Float)
    police_car_prob = Column(Float)
    arrow_board_prob = Column(Float)
    cones_prob = Column(Float)
    accident_prob = Column(Float)
    avg_road_width = Column(Float)
    crossing_time = Column(Float)
    crossing_speed = Column(Float)
    data_collected_date = Column(Date)
    first_imported_at = _created_at()
    last_updated_at = _updated_at()


PEDESTRIAN_FLAG_COLUMNS = (
    "backpack", "umbrella", "handbag", "suitcase",
    "short_sleeved_shirt", "long_sleeved_shirt", "short_sleeved_outwear",
    "long_sleeved_outwear", "vest", "sling", "shorts", "trousers", "skirt",
    "short_sleeved_dress", "long_sleeved_dress", "vest_dress", "sling_dress",
    "daytime", "police_car", "arrow_board", "cones", "accident", "crack",
    "potholes", "crossing_sign", "crosswalk", "sidewalk",
    "ambulance", "army_vehicle", "auto_rickshaw", "bicycle", "bus", "car",
    "garbagevan", "human", "hauler", "minibus", "minivan", "motorbike",
    "pickup", "policecar", "rickshaw", "scooter", "suv", "taxi",
    "three_wheelers_cng", "truck", "van", "wheelbarrow",
)


class Pedestrian(Base):
    """One tracked individual within a video"""

    __tablename__ = "pedestrians"
    __table_args__ = (
        UniqueConstraint("video_id", "track_id", name="uq_pedestrians_video_track"),
    )

    id = Column(Integer, primary_key=True)
    video_id = Column(
        Integer, ForeignKey("videos.id", ondelete="CASCADE"), nullable=False
    )
    track_id = Column(Integer, nullable=False)
    crossed = Column(Boolean)
    nearby_count_beginning = Column(Integer)
    nearby_count_whole = Column(Integer)
    risky_crossing = Column(Boolean)
    run_red_light = Column(Boolean)
    crosswalk_use_or_not = Column(Boolean)
    gender = Column(String)
    age = Column(Integer)
    phone_using = Column(Boolean)
    weather = Column(String)
    avg_vehicle_total = Column(Float)
    avg_road_width = Column(Float)
    backpack = Column(Boolean)
    umbrella = Column(Boolean)
    handbag = Column(Boolean)
    suitcase = Column(Boolean)
    short_sleeved_shirt = Column(Boolean)
    long_sleeved_shirt = Column(Boolean)
    short_sleeved_outwear = Column(Boolean)
    long_sleeved_outwear = Column(Boolean)
    vest = Column(Boolean)
    sling = Column(Boolean)
    shorts = Column(Boolean)
    trousers = Column(Boolean)
    skirt = Column(Boolean)
    short_sleeved_dress = Column(Boolean)
    long_sleeved_dress = Column(Boolean)
    vest_dress = Column(Boolean)
    sling_dress = Column(Boolean)
    daytime = Column(Boolean)
    police_car = Column(Boolean)
    arrow_board = Column(Boolean)
    cones = Column(Boolean)
    accident = Column(Boolean)
    crack = Column(Boolean)
    potholes = Column(Boolean)
    crossing_sign = Column(Boolean)
    crosswalk = Column(Boolean)
    sidewalk = Column(Boolean)
    ambulance = Column(Boolean)
    army_vehicle = Column(Boolean)
    auto_rickshaw = Column(Boolean)
    bicycle = Column(Boolean)
    bus = Column(Boolean)
    car = Column(Boolean)
    garbagevan = Column(Boolean)
    human = Column(Boolean)
    hauler = Column(Boolean)
    minibus = Column(Boolean)
    minivan = Column(Boolean)
    motorbike = Column(Boolean)
    pickup = Column(Boolean)
    policecar = Column(Boolean)
    rickshaw = Column(Boolean)
    scooter = Column(Boolean)
    suv = Column(Boolean)
    taxi = Column(Boolean)
    three_wheelers_cng = Column(Boolean)
    truck = Column(Boolean)
    van = Column(Boolean)
    wheelbarrow = Column(Boolean)
    created_at = _created_at()
    updated_at = _updated_at()


# -----------------------
# Generic star schema for derived statistics
# -----------------------
class AnalyticsDimension(Base):
    __tablename__ = "analytics_dimensions"
    __table_args__ = (
        UniqueConstraint("dimension_type", "dimension_value", name="uq_dimensions_type_value"),
    )

    id = Column(Integer, primary_key=True)
    dimension_type = Column(String, nullable=False)
    dimension_value = Column(String, nullable=False)
    description = Column(Text)
    created_at = _created_at()


class AnalyticsFact(Base):
    __tablename__ = "analytics_facts"
    __table_args__ = (
        Index("ix_facts_dimension_id", "dimension_id"),
        Index("ix_facts_data_source", "data_source"),
    )

    id = Column(Integer, primary_key=True)
    fact_type = Column(String, nullable=False)
    metric_name = Column(String, nullable=False)
    dimension_id = Column(
        Integer, ForeignKey("analytics_dimensions.id", ondelete="CASCADE"), nullable=False
    )
    value_numeric = Column(Float)
    value_percentage = Column(Float)
    correlation_coefficient = Column(Float)
    sample_size = Column(Integer)
    data_source = Column(String, nullable=False)
    created_at = _created_at()


# -----------------------
# Operational bookkeeping
# -----------------------
class IngestAudit(Base):
    """One row per processed file and stage"""

    __tablename__ = "ingest_audit"

    id = Column(Integer, primary_key=True)
    stage = Column(String, nullable=False)
    source_file = Column(String, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=False)
    rows_loaded = Column(Integer, nullable=False, default=0)
    rows_failed = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False)
    error = Column(Text)


cities = City.__table__
videos = Video.__table__
pedestrians = Pedestrian.__table__
dimensions = AnalyticsDimension.__table__
facts = AnalyticsFact.__table__
ingest_audit = IngestAudit.__table__
