"""Tarball handling: safe extraction and docker archives."""
