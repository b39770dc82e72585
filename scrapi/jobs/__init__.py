"""
Job lifecycle, processing loop and workflow.
"""
