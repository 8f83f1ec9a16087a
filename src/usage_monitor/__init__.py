"""Record application launches and exits from the live process table."""
