"""Curriculum core: content hierarchy and lesson edit-lock coordination."""
