"""
Pure domain layer: values, split rules, distribution arithmetic, event
records and event validation.  Nothing in here touches the database or
holds locks.
"""
