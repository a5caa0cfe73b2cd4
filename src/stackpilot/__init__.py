"""stackpilot: declarative resource provisioning with dependency-ordered, parallel execution."""

__version__ = "0.1.0"
