from mangum import Mangum

from loyalty.api import app

handler = Mangum(app, api_gateway_base_path="/api")
