# amr_app/models/gateway.py

from .base import BaseModel, db


class Gateway(BaseModel):
    """Data concentrator installed at a site; meters report through it"""

    __tablename__ = "gateways"

    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("sites.id"), nullable=False, index=True)
    serial_number = db.Column(db.String(100), unique=True, nullable=False)
    mac_address = db.Column(db.String(50), nullable=True)
    last_log_update = db.Column(db.DateTime, nullable=True)

    site = db.relationship("Site", back_populates="gateways")
    meters = db.relationship("Meter", back_populates="gateway")

    def __repr__(self):
        return f"<Gateway {self.serial_number}>"
