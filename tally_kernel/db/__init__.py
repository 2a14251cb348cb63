"""Kernel persistence primitives (declarative base, engine, session scope)."""
