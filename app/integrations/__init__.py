"""app.integrations — External service gateway modules.

All outbound calls to AWS account APIs go through a provider in this
package, never via bare boto3 calls in services or blueprints.

Current providers:
  aws_environment.AWSEnvironmentProvider — environment snapshot collectors
"""
