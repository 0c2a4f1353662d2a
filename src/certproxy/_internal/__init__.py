"""certproxy internals.

Modules in this package are not part of the public API and may change
between releases without notice.

"""
