"""Kernel domain layer -- pure value objects, zero I/O."""
