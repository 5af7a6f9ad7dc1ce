"""Built-in CLI sub-commands for pooledhttp.

* ``request`` -- send one HTTP request and print the response.
* ``config`` -- view and modify the persisted configuration.

These are registered on the root Typer app by
:func:`pooledhttp.app.register_commands`.
"""
