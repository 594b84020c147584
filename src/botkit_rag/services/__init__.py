"""Pipeline services: loading, chunking, embedding, storage, retrieval, chat and migration."""
