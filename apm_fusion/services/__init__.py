"""Entity discovery and end-to-end table views."""
