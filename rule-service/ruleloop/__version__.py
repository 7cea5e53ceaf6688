SERVICE_NAME = "ruleloop"
VERSION = "0.3.0"
