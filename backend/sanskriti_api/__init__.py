"""
Sanskriti Setu API — Package Initializer
=========================================

What: The shared request pipeline in front of the Sanskriti Setu feature
      routers (auth, users, cultural content, matches, chat).

Architecture Note:

    ┌─────────────────────────────────────┐
    │   main.py      process entry point  │  ← env, logging, uvicorn
    ├─────────────────────────────────────┤
    │   pipeline.py  ordered stages       │  ← assembly + order invariant
    ├─────────────────────────────────────┤
    │   middleware/  static.py handlers.py│  ← the stages themselves
    ├─────────────────────────────────────┤
    │   database.py  dependency tracker   │  ← read-only from requests
    └─────────────────────────────────────┘

    Feature routers are owned elsewhere and plugged in through
    routes.RouteTable.
"""

__version__ = "1.0.0"
