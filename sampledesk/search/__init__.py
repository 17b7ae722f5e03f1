"""
SampleDesk Semantic Search

Modules:
    embeddings  — Embedding provider client, text builder, cosine similarity
    search      — Brute-force top-K similarity search over stored samples
"""
