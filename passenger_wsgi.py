import sys
import os

# Make the project folder importable regardless of the server's working directory
project_home = os.path.dirname(os.path.abspath(__file__))
if project_home not in sys.path:
    sys.path.insert(0, project_home)

from main import create_app

application = create_app(os.environ.get('FLASK_CONFIG', 'production'))
