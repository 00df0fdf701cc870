"""Foundational pieces shared by every causelink component (configuration)."""
