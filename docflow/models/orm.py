"""
Database models for routes and instances.

Each record keeps the full pydantic payload as JSON plus a few indexed
columns used for lookups and ordering.
"""

from sqlalchemy import Column, String, Integer, Float, Text, Boolean, Index
from datetime import datetime

from docflow.models.database import Base


class WorkflowRouteRecord(Base):
    """
    Stored route definition.
    """

    __tablename__ = "workflow_routes"

    id = Column(String, primary_key=True)
    name = Column(String(200), nullable=False)
    document_type = Column(String(100), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)
    payload = Column(Text, nullable=False)  # JSON string
    # Insertion order drives first-match-wins route lookup
    inserted_at = Column(Float, nullable=False, default=lambda: datetime.now().timestamp())
    updated_at = Column(Float, nullable=False, default=lambda: datetime.now().timestamp())

    __table_args__ = (
        Index("idx_routes_document_type", "document_type"),
        Index("idx_routes_inserted", "inserted_at"),
    )

    @staticmethod
    def values_for(route) -> dict:
        """Column values for a WorkflowRoute"""
        return {
            "name": route.name,
            "document_type": route.document_type,
            "is_active": route.is_active,
            "version": route.version,
            "payload": route.model_dump_json(),
            "updated_at": datetime.now().timestamp(),
        }

    def apply(self, route):
        """Copy a WorkflowRoute onto this record"""
        for column, value in self.values_for(route).items():
            setattr(self, column, value)


class WorkflowInstanceRecord(Base):
    """
    Stored workflow instance, history included.
    """

    __tablename__ = "workflow_instances"

    id = Column(String, primary_key=True)
    document_id = Column(String, nullable=False)
    workflow_route_id = Column(String, nullable=False)
    status = Column(String(50), nullable=False)  # InstanceStatus enum value
    initiated_by = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=1)  # Optimistic locking
    payload = Column(Text, nullable=False)  # JSON string
    inserted_at = Column(Float, nullable=False, default=lambda: datetime.now().timestamp())
    updated_at = Column(Float, nullable=False, default=lambda: datetime.now().timestamp())

    __table_args__ = (
        # The timeout scanner and pending-approval queries filter on status
        Index("idx_instances_status", "status"),
        Index("idx_instances_initiated_by", "initiated_by"),
        Index("idx_instances_inserted", "inserted_at"),
    )

    @staticmethod
    def values_for(instance) -> dict:
        """Column values for a WorkflowInstance"""
        return {
            "document_id": instance.document_id,
            "workflow_route_id": instance.workflow_route_id,
            "status": instance.status.value,
            "initiated_by": instance.initiated_by,
            "version": instance.version,
            "payload": instance.model_dump_json(),
            "updated_at": datetime.now().timestamp(),
        }

    def apply(self, instance):
        """Copy a WorkflowInstance onto this record"""
        for column, value in self.values_for(instance).items():
            setattr(self, column, value)
