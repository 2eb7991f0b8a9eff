"""
Unified sync feature package.

Mirrors a user's remote workspace (mail, contacts, calendar, folders) into
the local store and keeps snapshot subscribers current. Layers follow the
usual feature slice: domain models, the record pipeline, storage adapters
and the orchestrating services.
"""
