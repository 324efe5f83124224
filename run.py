#!/usr/bin/env python3
"""
CurtainPoint Backend - Main application entry point
"""
from server import create_app

app = create_app()

if __name__ == '__main__':
    app.run(
        host='0.0.0.0',
        port=app.config['PORT'],
        debug=app.config['DEBUG']
    )
