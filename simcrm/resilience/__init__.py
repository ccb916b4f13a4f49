"""Rate limiting and circuit breaking for calls to the external CRM."""
