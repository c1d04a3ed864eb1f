import uuid
from sqlalchemy import Column, String, Text, DateTime, func, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from pgvector.sqlalchemy import Vector
from database import Base

EMBEDDING_DIM = 1536  # OpenAI text-embedding-3-small


class DocumentChunk(Base):
    __tablename__ = "document_chunks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Optional ticker the passage is about; NULL for general research material.
    symbol = Column(String, index=True, nullable=True)

    source = Column(String, nullable=True)
    title = Column(String, nullable=True)
    url = Column(String, nullable=True)

    content = Column(Text, nullable=False)
    metadata_info = Column(JSONB)

    embedding = Column(Vector(EMBEDDING_DIM), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_document_chunks_symbol_source", symbol, source),
    )
