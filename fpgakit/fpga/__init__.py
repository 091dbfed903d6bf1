"""PCI device discovery through sysfs and FPGA driver ioctl definitions."""