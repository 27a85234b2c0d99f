"""Text processing: tokenization, chunking, alignment and aggregation."""
