"""Media inspection, HLS transcoding and the single-flight job worker."""
