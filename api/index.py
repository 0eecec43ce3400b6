from mangum import Mangum

from ledger.api import create_app

# Serverless entrypoint; the deployment serves the API under /api.
app = create_app()
app.root_path = "/api"

handler = Mangum(app)
