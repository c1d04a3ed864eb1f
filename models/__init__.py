from .vectors.document_chunk import DocumentChunk
