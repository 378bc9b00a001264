"""
WSGI Entry Point
Imports the Flask app for gunicorn / any WSGI server
"""
import os

from tradebuilder.api.backend import app

# Export for gunicorn
application = app

if __name__ == '__main__':
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=False)
