"""Lending, reservation queue and fine handling for a shared book inventory."""
