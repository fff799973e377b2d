"""Pipeline data model."""
