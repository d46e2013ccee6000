"""Test suite for the parking facility core"""
