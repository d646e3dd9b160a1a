"""Converges an Elastic Beanstalk application stack on AWS."""

__version__ = "0.1.0"
