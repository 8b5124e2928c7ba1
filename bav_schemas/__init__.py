"""JSON Schemas for the documents accepted by the verifier."""
