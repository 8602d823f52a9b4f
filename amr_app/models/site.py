# amr_app/models/site.py

from sqlalchemy import Index

from .base import BaseModel, db


class Site(BaseModel):
    """A metered building or compound, optionally linked to an SAP business entity"""

    __tablename__ = "sites"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(100), unique=True, nullable=False, index=True)
    name = db.Column(db.String(200), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # SAP settlement data (SITE_LIST feed)
    sap_company_code = db.Column(db.String(20), nullable=True)
    sap_business_entity = db.Column(db.String(50), unique=True, nullable=True, index=True)
    sap_service_charge_key = db.Column(db.String(50), nullable=True)
    sap_participation_group = db.Column(db.String(50), nullable=True)
    sap_settlement_unit = db.Column(db.String(50), nullable=True)
    sap_cut_off_day = db.Column(db.Integer, default=0, nullable=False)  # 0 = never exported
    sap_settlement_variant = db.Column(db.String(200), nullable=True)
    sap_settlement_valid_from = db.Column(db.Date, nullable=True)
    sap_settlement_valid_to = db.Column(db.Date, nullable=True)
    sap_source = db.Column(db.String(10), nullable=True)  # SAP or SEP tier
    sap_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Relationships
    gateways = db.relationship("Gateway", back_populates="site", order_by="Gateway.id")
    meters = db.relationship("Meter", back_populates="site")

    __table_args__ = (Index("idx_site_cutoff_entity", "sap_cut_off_day", "sap_business_entity"),)

    def __repr__(self):
        return f"<Site {self.code}>"

    def primary_gateway(self):
        return self.gateways[0] if self.gateways else None
