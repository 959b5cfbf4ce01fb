"""HTTP surface of the coordinator."""
