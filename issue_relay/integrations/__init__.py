"""Process configuration and tool-server composition."""
