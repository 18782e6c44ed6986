"""fieldline — parcel data ingestion with a local feature cache."""

__version__ = "0.1.0"
