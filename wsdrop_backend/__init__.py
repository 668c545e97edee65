"""Backend for the wsdrop upload service.

FastAPI route handlers in server.py stay thin; the logic lives here:
- per-connection upload sessions with heartbeat tracking
- storage reservation under <files_root>/<token>/<name>
- the shared token registry consulted by downloads
- download resolution

Security note:
Tokens are capability handles (unguessable UUID4). Anyone holding a token
can download that file, so never log stored content or expose filesystem
paths in responses.
"""
