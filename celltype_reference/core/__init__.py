"""Core algorithms for reference-based cell-type classification."""
