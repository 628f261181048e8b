"""Agreement offer lifecycle, event handling and HTTP API."""
