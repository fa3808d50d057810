"""epochshare — private reward splitting with commit, prove, reveal and settle."""

__version__ = "0.1.0"
