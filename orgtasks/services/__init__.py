"""
Service layer: lifecycle engine, access policy and new-task notifications.
"""
