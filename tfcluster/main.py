import uvicorn

from tfcluster.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run("tfcluster.api:create_app",
                host=settings.server_host, port=settings.server_port, factory=True)
