"""
NYC Building Insights - API entry point.

Builds the pipeline from configuration and serves it with uvicorn.
"""

import uvicorn

from nycdb_insights.api.server import create_app
from nycdb_insights.core.config import Config
from nycdb_insights.utils.app_utils import create_pipeline


def main():
    app = create_app(create_pipeline(), cors_origins=Config.CORS_ORIGINS)
    uvicorn.run(app, host=Config.API_HOST, port=Config.API_PORT)


if __name__ == "__main__":
    main()
