"""Utilities for running certproxy tests."""
