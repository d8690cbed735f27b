"""Company-profile discovery for the job-application tracker."""

__version__ = "0.3.0"
