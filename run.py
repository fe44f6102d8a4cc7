from mediabridge.main import app

# Run the bridge app
if __name__ == "__main__":
    import uvicorn

    from mediabridge.configs import settings

    uvicorn.run(app, host="0.0.0.0", port=3001, log_level=settings.log_level.lower())
