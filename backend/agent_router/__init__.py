"""Legal agent router: rate-limited, circuit-broken RAG pipeline for legal questions."""
