from mangum import Mangum

from tipledger.api import app

handler = Mangum(app)
