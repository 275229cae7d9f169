"""Transcoding: target selection, encoding, manifest aggregation and publishing."""
