"""Lucid autonomous agent scheduler."""
