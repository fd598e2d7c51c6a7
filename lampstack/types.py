"""
Type definitions for Lampstack.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

# Type aliases for better readability
ResourceName = str
ResourceAddress = str
Cidr = str
CommandList = List[str]
Environment = Dict[str, str]

# Raw configuration sections, as loaded from YAML
NetworkDefinition = Dict[str, str]
SubnetDefinition = Dict[str, Union[str, bool]]
IngressDefinition = Dict[str, Union[int, str, List[str]]]
FirewallDefinition = Dict[str, Union[str, List[IngressDefinition]]]
InstanceDefinition = Dict[str, Union[str, int, bool, List[str], Dict[str, Any]]]
StepDefinition = Dict[str, Union[str, int, Dict[str, Any]]]
BootstrapDefinition = Dict[str, Union[str, List[StepDefinition], Dict[str, Any]]]

# Full configuration structure
LampstackConfig = Dict[str, Any]

# CLI options
CliOptions = Dict[str, Union[bool, str, Optional[Path]]]
