"""Shared plumbing for Media Hub services: config, wire messages, transports, errors."""
