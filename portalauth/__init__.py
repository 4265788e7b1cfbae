"""Session and authentication-token lifecycle service for the job portal."""

__version__ = "0.3.0"
