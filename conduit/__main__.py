from conduit.main import main

main()
