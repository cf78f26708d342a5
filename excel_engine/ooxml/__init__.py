"""OOXML package serialization: parts, relationships, encryption."""
