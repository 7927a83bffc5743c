"""Database models for upload sessions, stored files and analysis jobs."""

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class UploadSessionRow(Base):
    __tablename__ = "upload_sessions"

    id = Column(String(64), primary_key=True)
    original_name = Column(String(512), nullable=False)
    content_type = Column(String(255), nullable=True)
    size_bytes = Column(BigInteger, nullable=False)
    chunk_size_bytes = Column(Integer, nullable=False)
    received_bytes = Column(BigInteger, nullable=False, default=0)
    status = Column(String(20), nullable=False, index=True)
    expected_sha256 = Column(String(64), nullable=True)  # client-declared, hex
    stored_file_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<UploadSessionRow(id={self.id}, name={self.original_name}, status={self.status})>"


class StoredFileRow(Base):
    __tablename__ = "stored_files"

    id = Column(String(64), primary_key=True)
    original_name = Column(String(512), nullable=False)
    content_type = Column(String(255), nullable=True)
    size_bytes = Column(BigInteger, nullable=False)
    sha256 = Column(String(64), nullable=True, index=True)
    storage_path = Column(String(1024), nullable=True)
    created_at = Column(DateTime, nullable=False)


class AnalysisJobRow(Base):
    __tablename__ = "analysis_jobs"

    stored_file_id = Column(String(64), primary_key=True)
    status = Column(String(20), nullable=False, index=True)
    processed_rows = Column(BigInteger, nullable=False, default=0)
    total_rows = Column(BigInteger, nullable=True)
    result_json = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False)
