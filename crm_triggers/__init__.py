"""Opportunity lifecycle automation: validation, cascading fields and side effects per trigger phase."""
