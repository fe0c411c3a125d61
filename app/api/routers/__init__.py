"""
FastAPI routers for the bulk import API.

``uploads`` covers initiating and completing direct-to-storage uploads;
``jobs`` covers progress, cancellation and failed-record repair.
"""
