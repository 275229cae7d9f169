"""Application modules.

This package contains the feature modules of the pipeline:

- video: registration, status, thumbnails and deletion
- upload: chunk intake and assembly
- transcoding: ladder selection, encoding, manifest and publishing
"""
