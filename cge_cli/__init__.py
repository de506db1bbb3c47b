"""CGE command line: configuration loading, logging setup and the fire entry point."""
