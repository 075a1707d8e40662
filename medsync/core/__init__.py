"""
Engine core
Storage, errors, time helpers, logging and engine wiring
"""
