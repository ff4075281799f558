"""Task models and store interfaces."""
