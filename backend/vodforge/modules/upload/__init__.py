"""Resumable chunked upload: staging and assembly."""
