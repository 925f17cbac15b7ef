from dotenv import load_dotenv
load_dotenv()
from watchdog_service.main import app

if __name__ == "__main__":
    import uvicorn
    from watchdog_service.db import Settings
    settings = Settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
