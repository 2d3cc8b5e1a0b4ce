from sqlalchemy import Column, Integer, BigInteger, String, DateTime, func
from etherquery.db.database import Base

class ExportCursor(Base):
    """One row per cursor version; the newest row of a stream is the cursor."""

    __tablename__ = "export_cursors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stream = Column(String(255), nullable=False, index=True)
    block_number = Column(BigInteger, nullable=False)
    block_hash = Column(String(66), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
