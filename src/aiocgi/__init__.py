"""
An event-streaming application bridge that speaks CGI.

aiocgi translates one CGI invocation (request metadata in the environment, request
body on standard input, response on standard output) into a read-only scope, a stream
of request events handed to the application, and a stream of response events produced
by the application.

The protocol handling is agnostic to where the bytes come from, and I/O adapters
connect it to a specific transport (such as the process’s standard streams).

I/O adapters are setuptools entry points in the aiocgi.io group, allowing other
packages to add their own. An adapter must expose a function named “run”. See the
stdio module for its signature.

Please see the individual modules for more details.
"""
