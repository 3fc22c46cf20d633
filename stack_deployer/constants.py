"""Centralized constants for stack deployment to eliminate duplicate strings."""

# Bootstrap (staging) environment
DEFAULT_TOOLKIT_STACK_NAME = "CDKToolkit"
DEFAULT_BOOTSTRAP_QUALIFIER = "hnb659fds"
BOOTSTRAP_VERSION_OUTPUT = "BootstrapVersion"
BOOTSTRAP_VERSION_RESOURCE = "CdkBootstrapVersion"
BOOTSTRAP_COMMAND = "cdk bootstrap"

# SSM parameters published by the bootstrap stack, per qualifier
SSM_BUCKET_NAME = "/cdk-bootstrap/{qualifier}/bucket-name"
SSM_BUCKET_DOMAIN_NAME = "/cdk-bootstrap/{qualifier}/bucket-domain-name"
SSM_VERSION = "/cdk-bootstrap/{qualifier}/version"

# Environment markers
UNKNOWN_ACCOUNT = "unknown-account"
UNKNOWN_REGION = "unknown-region"

# Placeholders that may appear in ARNs, URLs and asset destinations
ACCOUNT_PLACEHOLDER = "${AWS::AccountId}"
REGION_PLACEHOLDER = "${AWS::Region}"
PARTITION_PLACEHOLDER = "${AWS::Partition}"

# Templates
LARGE_TEMPLATE_SIZE_KB = 50
TEMPLATE_OBJECT_PREFIX = "cdk"

# Change sets
CHANGE_SET_PREFIX = "CDK-"
CHANGE_SET_CAPABILITIES = ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND"]
NO_CHANGE_REASON_PREFIXES = (
    "The submitted information didn't contain changes.",
    "No updates are to be performed.",
)

# Assets
ASSET_OBJECT_PREFIX = "assets/"
ASSET_PREFIX_SEPARATOR = "||"
ASSET_REPOSITORY_PREFIX = "cdk/"
ASSET_REPOSITORY_TAG = {"Key": "awscdk:asset", "Value": "true"}
CURRENT_DESTINATION = "current_account-current_region"
ASSET_MANIFEST_VERSION = "5.0.0"

# AWS error codes treated as negative results
STACK_NOT_FOUND_CODE = "ValidationError"
PARAMETER_NOT_FOUND_CODE = "ParameterNotFound"
REPOSITORY_NOT_FOUND_CODE = "RepositoryNotFoundException"
IMAGE_NOT_FOUND_CODE = "ImageNotFoundException"

# Parameter wildcard for overrides that apply to every stack
ALL_STACKS = "*"
