"""calsync: two-way synchronization between local calendars and Google / Outlook."""

__version__ = "0.1.0"
