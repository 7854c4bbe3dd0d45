"""
Test Tools Package
Tests for the tools module (time helpers, schedule compiler, grace periods, classifier, gateways)
"""
