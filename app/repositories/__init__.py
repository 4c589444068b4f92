"""
app/repositories package marker.
"""

from app.repositories.membership_record_repository import MembershipRecordRepository
from app.repositories.persistence_gateway import PersistenceGateway, SQLAlchemyPersistenceGateway

__all__ = [
    "MembershipRecordRepository",
    "PersistenceGateway",
    "SQLAlchemyPersistenceGateway",
]
