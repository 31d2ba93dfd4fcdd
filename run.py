#!/usr/bin/env python3
"""Development server runner"""
import os
from streamback import create_app

if __name__ == '__main__':
    # Use development config for local testing
    app = create_app('development')

    # The reloader would start a second scheduler, so it stays off
    port = int(os.environ.get('PORT', 3000))
    app.run(host='0.0.0.0', port=port, debug=True, use_reloader=False)
