"""SR-IOV network device discovery, configuration, policy validation and plugins."""

__version__ = "4.7.0"