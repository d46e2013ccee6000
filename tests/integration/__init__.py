"""Integration tests running the service over real storage and the CLI"""
