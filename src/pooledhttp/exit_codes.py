"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~pooledhttp.exceptions.PooledHTTPError` subclass.
Shell scripts wrapping ``pooledhttp request`` can inspect the exit code to
tell a refused connection from a rejected status without parsing stderr.

Example::

    $ pooledhttp request https://example.com/missing
    $ echo $?
    5   # EXIT_STATUS_REJECTED -- the server answered 404
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or a malformed URL."""

EXIT_CONNECT_FAILURE = 3
"""A fresh connection could not be established (DNS, TCP or TLS failure)."""

EXIT_CONNECTION_LOST = 4
"""An established connection failed mid-request (reset, timeout, bad framing)."""

EXIT_STATUS_REJECTED = 5
"""The response status code was rejected by the status policy."""

EXIT_TOO_MANY_REDIRECTS = 6
"""The redirect chain exceeded the configured limit."""
