"""Development harness: rebuild, restart and proxy an app as its sources change."""

__version__ = "0.1.0"
