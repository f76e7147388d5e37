import uvicorn

from api.main import create_app
from config import Settings

if __name__ == "__main__":
    settings = Settings.load()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
