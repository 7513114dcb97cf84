"""caseflow.integrations — External collaborator gateway modules.
"""
