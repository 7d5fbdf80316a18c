"""
Backend API Service - FastAPI Application

Responsibilities:
- Trigger pipeline runs over HTTP (POST /members, /channels, /all)
- Merge JSON body and query string into run parameters
- Map validation errors to 400 and run failures to 500
- Health checks for the container platform (GET /, GET /health)
"""
