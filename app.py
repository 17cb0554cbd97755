import os
import warnings

# Keep startup clean in local dev environments.
warnings.filterwarnings(
    "ignore",
    message=r"urllib3 v2 only supports OpenSSL 1\.1\.1\+.*"
)

from dotenv import load_dotenv

load_dotenv()

from marketplace import create_app

app = create_app()

if __name__ == '__main__':
    app.run(debug=True, port=int(os.getenv('PORT', '5000')))
