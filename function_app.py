import logging

import azure.functions as func

from shared.db import init_db

logging.getLogger(__name__).info("Initializing CRM function app")

# Create tables if they don't exist; runs once when the Functions host loads the app.
init_db()

app = func.FunctionApp()

# Import endpoint modules so their routes register with the shared app.
import auth_endpoints  # noqa
import crm_endpoints  # noqa
import admin_endpoints  # noqa
import company_endpoints  # noqa
import dashboard_endpoints  # noqa
import health_endpoints  # noqa
