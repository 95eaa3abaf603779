"""Configuration: database access, alert settings and logging"""
