"""client/ -- Session Client, Request Gateway, and Access Guard for the dashboard and mobile app.

Layer rule: client/ imports only stdlib + third-party libraries + core/.
It never imports from auth/ or api/: everything it knows about the server
arrives over HTTP through client.gateway.RequestGateway.
"""
