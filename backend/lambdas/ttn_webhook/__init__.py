"""LoRaWAN uplink webhook: decode, persist and aggregate occupancy readings."""
