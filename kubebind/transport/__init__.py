"""Binding connection transport: handshake, listeners and splicing."""
