"""
mealmatch.domain: Canonical data models, enumerations and errors.

Nothing in here should import from other mealmatch sub-packages (only the
standard library).
"""
