"""
SETTLEMENT RAIL - Serverless Entry Point

AWS Lambda / Vercel handler wrapping the FastAPI application.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from mangum import Mangum

from settlement_rail.api.server import app

handler = Mangum(app, lifespan="auto")
