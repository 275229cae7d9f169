"""Video assets: registration, status, thumbnails and deletion."""
