"""Pipeline records and per-phase model response shapes."""
