# amr_app/models/meter.py

from sqlalchemy import Index

from .base import BaseModel, db

METER_STATUS_ACTIVE = "Active"
METER_STATUS_INACTIVE = "Inactive"
METER_ROLE_CLIENT = "Client Meter"
METER_ROLE_SPARE = "Spare Meter"
UNASSIGNED_SITE_CODE = "unassigned"


class Meter(BaseModel):
    """Energy meter; SAP identifies it by description number plus business entity"""

    __tablename__ = "meters"

    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("sites.id"), nullable=True, index=True)
    gateway_id = db.Column(db.Integer, db.ForeignKey("gateways.id"), nullable=True, index=True)
    site_code = db.Column(db.String(100), nullable=True, index=True)
    name = db.Column(db.String(100), nullable=False, index=True)
    role = db.Column(db.String(50), default=METER_ROLE_CLIENT, nullable=False)
    status = db.Column(db.String(20), default=METER_STATUS_ACTIVE, nullable=False, index=True)
    customer_name = db.Column(db.String(255), nullable=True)
    multiplier = db.Column(db.Float, default=1.0, nullable=False)
    last_log_update = db.Column(db.DateTime, nullable=True)

    # SAP master data (METER_LIST feed)
    sap_company_code = db.Column(db.String(20), nullable=True)
    sap_business_entity = db.Column(db.String(50), nullable=True, index=True)
    sap_building = db.Column(db.String(50), nullable=True)
    sap_building_description = db.Column(db.String(255), nullable=True)
    sap_land = db.Column(db.String(50), nullable=True)
    sap_land_description = db.Column(db.String(255), nullable=True)
    sap_rental_object_no = db.Column(db.String(50), nullable=True)
    sap_rental_object_name = db.Column(db.String(255), nullable=True)
    sap_usage_type = db.Column(db.String(50), nullable=True)
    sap_ro_valid_from = db.Column(db.Date, nullable=True)
    sap_ro_valid_to = db.Column(db.Date, nullable=True)
    sap_contract_number = db.Column(db.String(50), nullable=True)
    sap_meter_characteristic = db.Column(db.String(50), nullable=True)
    sap_measuring_point = db.Column(db.String(50), nullable=True)
    sap_measuring_point_desc = db.Column(db.String(100), nullable=True)
    sap_measurement_sequence = db.Column(db.String(20), nullable=True)
    sap_measurement_separator = db.Column(db.String(20), nullable=True)
    sap_last_reading_date = db.Column(db.Date, nullable=True)
    sap_last_reading = db.Column(db.Float, nullable=True)
    sap_participation_group = db.Column(db.String(50), nullable=True)
    sap_source = db.Column(db.String(10), nullable=True)  # SAP or SEP tier
    sap_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Relationships
    site = db.relationship("Site", back_populates="meters")
    gateway = db.relationship("Gateway", back_populates="meters")
    readings = db.relationship(
        "MeterReading", back_populates="meter", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        db.UniqueConstraint("name", "sap_business_entity", name="_meter_name_entity_uc"),
        Index("idx_meter_site_status", "site_code", "status"),
    )

    def __repr__(self):
        return f"<Meter {self.name} entity={self.sap_business_entity}>"

    @property
    def is_active(self):
        return self.status == METER_STATUS_ACTIVE


class MeterReading(BaseModel):
    """Cumulative energy register value persisted by the polling layer"""

    __tablename__ = "meter_readings"

    id = db.Column(db.Integer, primary_key=True)
    meter_id = db.Column(db.Integer, db.ForeignKey("meters.id", ondelete="CASCADE"), nullable=False)
    reading_at = db.Column(db.DateTime, nullable=False)  # device local time
    wh_total = db.Column(db.Float, nullable=True)

    meter = db.relationship("Meter", back_populates="readings")

    __table_args__ = (Index("idx_reading_meter_time", "meter_id", "reading_at"),)

    def __repr__(self):
        return f"<MeterReading meter={self.meter_id} at={self.reading_at}>"
