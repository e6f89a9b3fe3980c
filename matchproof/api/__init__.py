# HTTP API routes
