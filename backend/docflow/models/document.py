import uuid

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class Template(Base):
    __tablename__ = "templates"
    __table_args__ = (Index("idx_templates_user", "user_id"),)

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    document_type = Column(String(64), nullable=False, default="other", server_default=text("'other'"))
    fields = Column(JSON_TYPE, nullable=False, default=list)
    settings = Column(JSON_TYPE, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('uploaded','processing','completed','failed')",
            name="chk_documents_status",
        ),
        Index("idx_documents_user_created", "user_id", "created_at"),
        Index("idx_documents_template", "template_id"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    mime_type = Column(String(128))
    storage_path = Column(Text)
    status = Column(String(32), nullable=False, default="uploaded", server_default=text("'uploaded'"))
    document_type = Column(String(64))
    template_id = Column(UUID_TYPE, ForeignKey("templates.id", ondelete="SET NULL"))
    page_count = Column(Integer, nullable=False, default=1, server_default=text("1"))
    # Stored ParsingResult; replaced wholesale on re-extraction.
    extraction = Column(JSON_TYPE)
    confidence = Column(Numeric(5, 2))
    processed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ExportJob(Base):
    __tablename__ = "exports"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','processing','completed','failed','expired')",
            name="chk_exports_status",
        ),
        CheckConstraint(
            "type IN ('document_export','template_export','bulk_export')",
            name="chk_exports_type",
        ),
        CheckConstraint(
            "format IN ('json','csv','excel','structured','pdf','zip')",
            name="chk_exports_format",
        ),
        Index("idx_exports_user_created", "user_id", "created_at"),
        Index("idx_exports_status", "status"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(String(32), nullable=False, default="pending", server_default=text("'pending'"))
    type = Column(String(32), nullable=False, default="document_export")
    format = Column(String(16), nullable=False, default="json")
    filters = Column(JSON_TYPE, nullable=False, default=dict)
    include_fields = Column(JSON_TYPE, nullable=False, default=list)
    settings = Column(JSON_TYPE, nullable=False, default=dict)
    document_ids = Column(JSON_TYPE, nullable=False, default=list)
    file_path = Column(Text)
    file_size = Column(Integer, nullable=False, default=0, server_default=text("0"))
    records_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    download_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    retry_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    expires_at = Column(DateTime(timezone=True), nullable=False)
