"""crmkit - todo list and small CRM (contacts, deals, pipeline, activity log)."""

__version__ = "0.1.0"
