"""Read-side endpoints for lounge occupancy and device configuration."""
