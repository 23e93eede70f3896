"""
Location hierarchy application.

Holds the state > district > area > unit tree that role assignments are
scoped to and that applications are filed under.
"""
