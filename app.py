#!/usr/bin/env python3
"""
LastSignal - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
Runs the same CLI as the `lastsignal` console script, for
process managers that start a script file.

- Compatible with PM2 process management
- Can be started, stopped, and restarted safely
- SIGINT / SIGTERM stop the loop between cycles

============================================================
USAGE
============================================================
Direct execution:
    python app.py run

With PM2:
    pm2 start app.py --interpreter python --name lastsignal -- run

Environment-based configuration:
    LASTSIGNAL_CONFIG=/etc/lastsignal/config.yaml python app.py run

============================================================
PM2 ECOSYSTEM CONFIG (ecosystem.config.js)
============================================================
module.exports = {
    apps: [{
        name: 'lastsignal',
        script: 'app.py',
        interpreter: 'python',
        args: 'run',
        env: {
            LASTSIGNAL_LOG_LEVEL: 'info',
        },
        max_restarts: 10,
        restart_delay: 5000,
        watch: false,
    }]
};

============================================================
"""

import sys

from lastsignal.orchestrator.cli import main


if __name__ == "__main__":
    sys.exit(main())
