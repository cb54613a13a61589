"""
SQLAlchemy ORM models for the templater database.
Documents, their detected fields, and reusable templates.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Enum as SQLEnum,
    JSON,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from app.database import Base


# Enums
class DocumentStatus(str, enum.Enum):
    """Lifecycle of an uploaded document."""

    UPLOADED = "uploaded"
    VERIFIED = "verified"
    TEMPLATED = "templated"


class ProcessingStatus(str, enum.Enum):
    """Persisted state of the background run-delta job."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Models
class User(Base):
    """User account (identity supplied by the frontend via X-User-Id)."""

    __tablename__ = "users"

    id = Column(String(255), primary_key=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    documents = relationship("Document", back_populates="user", cascade="all, delete-orphan")
    templates = relationship("Template", back_populates="user", cascade="all, delete-orphan")


class Document(Base):
    """Uploaded DOCX plus the state of its conversion into a template."""

    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    file_type = Column(String(50), nullable=False, default="docx")
    storage_path = Column(String(512), nullable=False)
    metadata_json = Column(JSON, nullable=True)  # Title, author, paragraph counts

    status = Column(SQLEnum(DocumentStatus), nullable=False, default=DocumentStatus.UPLOADED)
    # Latest document.xml with {{tags}} applied
    xml_content = Column(Text, nullable=True)

    processing_status = Column(
        SQLEnum(ProcessingStatus), nullable=False, default=ProcessingStatus.PENDING
    )
    processing_result = Column(JSON, nullable=True)

    # No FK: templates.original_document_id already points the other way
    template_id = Column(Integer, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    # Relationships
    user = relationship("User", back_populates="documents")
    fields = relationship(
        "DocumentField",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentField.position",
    )


class DocumentField(Base):
    """A variable detected in a document: original text and the tag that replaced it."""

    __tablename__ = "document_fields"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    field_name = Column(String(255), nullable=False)
    field_value = Column(Text, nullable=True)  # Original text
    field_tag = Column(String(255), nullable=False)  # {{fieldName}}
    position = Column(Integer, nullable=True)  # Text node index in document.xml
    run_formatting = Column(JSON, nullable=True)  # bold, italic, fontSize, ...
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    document = relationship("Document", back_populates="fields")


class Template(Base):
    """Reusable tagged DOCX with example values for each tag."""

    __tablename__ = "templates"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    original_document_id = Column(
        Integer, ForeignKey("documents.id", ondelete="SET NULL"), nullable=True, index=True
    )
    storage_path = Column(String(512), nullable=False)
    tag_metadata = Column(JSON, nullable=False, default=dict)  # {tagName: exampleOriginalValue}
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    user = relationship("User", back_populates="templates")
    original_document = relationship("Document", foreign_keys=[original_document_id])
