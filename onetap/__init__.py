"""onetap: claim an iOS simulator per terminal session, then build, install and run."""

__version__ = "1.0.0"
