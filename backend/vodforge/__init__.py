"""VodForge: resumable upload and HLS transcoding pipeline."""
