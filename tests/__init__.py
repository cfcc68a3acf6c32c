"""
Pattern detector test suite

Structure:
- unit/: Unit tests for individual components and the end-to-end detector
"""
