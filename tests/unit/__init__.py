"""Unit tests for the domain, application and configuration layers"""
