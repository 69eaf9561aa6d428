"""Image upload, transform and retention service."""
