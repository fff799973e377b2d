"""HTTP surface: submission endpoint and health check."""
