"""
Kodisha Payments Package

HTTP routers and background tasks for the M-Pesa payment subsystem.
"""
