"""External collaborators: CRM and error tracking."""
