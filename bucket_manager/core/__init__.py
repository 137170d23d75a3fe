"""Core infrastructure: configuration, logging, process and SSH execution."""
