from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text

from telematics.db.session import Base


class Vehicle(Base):
    __tablename__ = "vehicles"

    device_id = Column(String, primary_key=True, index=True)
    device_name = Column(String, nullable=True)
    group_id = Column(String, nullable=True)
    group_name = Column(String, nullable=True)
    device_type = Column(String, nullable=True)
    sim_number = Column(String, nullable=True)
    gps_owner = Column(String, nullable=True)
    vehicle_status = Column(String, nullable=False, default="active")  # active|hibernated
    last_synced_at = Column(DateTime(timezone=True), nullable=True)


class VehiclePosition(Base):
    """Current position, one row per device (latest vendor timestamp wins)."""

    __tablename__ = "vehicle_positions"

    device_id = Column(String, primary_key=True, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    speed = Column(Float, nullable=False, default=0.0)  # km/h
    heading = Column(Float, nullable=True)
    altitude = Column(Float, nullable=True)
    battery_percent = Column(Integer, nullable=True)
    signal_strength = Column(Integer, nullable=True)
    ignition_on = Column(Boolean, nullable=True)  # NULL = unknown
    ignition_confidence = Column(Float, nullable=False, default=0.0)
    ignition_detection_method = Column(String, nullable=False, default="unknown")
    is_moving = Column(Boolean, nullable=False, default=False)
    is_online = Column(Boolean, nullable=False, default=False)
    is_overspeeding = Column(Boolean, nullable=False, default=False)
    total_mileage = Column(Float, nullable=True)
    status_text = Column(String, nullable=True)
    data_quality = Column(String, nullable=False, default="low")
    gps_time = Column(DateTime(timezone=True), nullable=True)
    gps_fix_time = Column(DateTime(timezone=True), nullable=True)
    sync_priority = Column(String, nullable=False, default="normal")  # high|normal
    cached_at = Column(DateTime(timezone=True), nullable=False, index=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=False)


class PositionHistory(Base):
    __tablename__ = "position_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    speed = Column(Float, nullable=False, default=0.0)
    heading = Column(Float, nullable=True)
    battery_percent = Column(Integer, nullable=True)
    ignition_on = Column(Boolean, nullable=True)
    ignition_confidence = Column(Float, nullable=True)
    ignition_detection_method = Column(String, nullable=True)
    gps_time = Column(DateTime(timezone=True), nullable=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_position_history_device_recorded", "device_id", "recorded_at"),
    )


class ProactiveVehicleEvent(Base):
    __tablename__ = "proactive_vehicle_events"

    id = Column(String, primary_key=True, index=True)
    device_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    severity = Column(String, nullable=False)  # info|warning|critical|error
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    metadata_json = Column("metadata", Text, nullable=False, default="{}")
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_proactive_events_device_type_created", "device_id", "event_type", "created_at"),
    )


class AppSetting(Base):
    """Key/value rows shared by all pollers (vendor token, rate-limit state)."""

    __tablename__ = "app_settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", Text, nullable=False, default="{}")
    updated_at = Column(DateTime(timezone=True), nullable=False)


class GpsApiLog(Base):
    __tablename__ = "gps_api_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String, nullable=False)
    request_body = Column(Text, nullable=True)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
